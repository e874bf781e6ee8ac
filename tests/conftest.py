import copy
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

T0 = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)

class MemoryDB:
    """RoundStore 的記憶體版：條件式轉換語意與 SQL 版相同，出錯時整個 transaction 還原"""

    def __init__(self):
        self.rounds = {}
        self.bets = {}
        self.wallets = {}
        self.settings = {}
        self.seq = 0
        self.busy = set()      # (game_type, duration) 被別的 tick 持有
        self.failing = set()   # 這些 game_type 的存取一律丟錯
        self.down = False      # 整個 store 無法連線

    @contextmanager
    def open(self):
        if self.down:
            raise RuntimeError("store unreachable")
        snapshot = copy.deepcopy((self.rounds, self.bets, self.wallets, self.settings, self.seq))
        try:
            yield MemoryStore(self)
        except Exception:
            self.rounds, self.bets, self.wallets, self.settings, self.seq = snapshot
            raise

    def next_seq(self):
        self.seq += 1
        return self.seq

class MemoryStore:
    def __init__(self, db: MemoryDB):
        self.db = db

    @staticmethod
    def _out(row):
        return None if row is None else {k: v for k, v in row.items() if k != "_seq"}

    def get_setting(self, key):
        value = self.db.settings.get(key)
        return copy.deepcopy(value)

    def put_setting(self, key, value):
        self.db.settings[key] = copy.deepcopy(value)
        return copy.deepcopy(value)

    def try_lock_stream(self, game_type, duration):
        if game_type in self.db.failing:
            raise RuntimeError(f"{game_type} store timeout")
        return (game_type, duration) not in self.db.busy

    def _stream(self, game_type, duration):
        return [r for r in self.db.rounds.values()
                if r["game_type"] == game_type and r["duration"] == duration]

    def active_round(self, game_type, duration):
        active = [r for r in self._stream(game_type, duration) if r["status"] in ("betting", "locked")]
        active.sort(key=lambda r: r["_seq"], reverse=True)
        return self._out(active[0]) if active else None

    def last_round_number(self, game_type, duration):
        return max((r["round_number"] for r in self._stream(game_type, duration)), default=0)

    def insert_round(self, game_type, round_number, duration, start_time, end_time):
        stream = self._stream(game_type, duration)
        if any(r["round_number"] == round_number for r in stream):
            return None
        if any(r["status"] in ("betting", "locked") for r in stream):
            return None
        row = {
            "id": uuid.uuid4(), "game_type": game_type, "round_number": round_number,
            "status": "betting", "start_time": start_time, "end_time": end_time,
            "duration": duration, "result": None, "total_bets": None, "total_amount": None,
            "created_at": start_time, "_seq": self.db.next_seq(),
        }
        self.db.rounds[row["id"]] = row
        return self._out(row)

    def get_round(self, round_id, for_share=False):
        return self._out(self.db.rounds.get(round_id))

    def lock_round(self, round_id):
        r = self.db.rounds.get(round_id)
        if r is None or r["status"] != "betting":
            return False
        r["status"] = "locked"
        return True

    def complete_round(self, round_id, result, total_bets, total_amount):
        r = self.db.rounds.get(round_id)
        if r is None or r["status"] not in ("betting", "locked") or r["result"] is not None:
            return False
        r.update(status="completed", result=result, total_bets=total_bets, total_amount=total_amount)
        return True

    def cancel_round(self, round_id):
        r = self.db.rounds.get(round_id)
        if r is None or r["status"] not in ("betting", "locked") or r["result"] is not None:
            return False
        r["status"] = "cancelled"
        return True

    def active_streams(self):
        return sorted({(r["game_type"], r["duration"]) for r in self.db.rounds.values()
                       if r["status"] in ("betting", "locked")})

    def recent_rounds(self, game_type, duration, limit=10):
        rows = sorted(self._stream(game_type, duration), key=lambda r: r["round_number"], reverse=True)
        return [self._out(r) for r in rows[:limit]]

    def round_bets(self, round_id):
        rows = sorted((b for b in self.db.bets.values() if b["round_id"] == round_id), key=lambda b: b["_seq"])
        return [self._out(b) for b in rows]

    def user_bet(self, user_id, round_id):
        for b in self.db.bets.values():
            if b["user_id"] == user_id and b["round_id"] == round_id:
                return self._out(b)
        return None

    def user_bets(self, user_id, limit=20):
        rows = sorted((b for b in self.db.bets.values() if b["user_id"] == user_id),
                      key=lambda b: b["_seq"], reverse=True)
        out = []
        for b in rows[:limit]:
            r = self.db.rounds[b["round_id"]]
            out.append(dict(self._out(b), game_type=r["game_type"], round_number=r["round_number"],
                            duration=r["duration"], round_status=r["status"], result=r["result"]))
        return out

    def insert_bet(self, user_id, round_id, bet_choice, amount):
        if self.user_bet(user_id, round_id) is not None:
            return None
        row = {
            "id": uuid.uuid4(), "user_id": user_id, "round_id": round_id,
            "bet_choice": bet_choice, "amount": Decimal(amount), "won": None, "payout": None,
            "created_at": T0, "_seq": self.db.next_seq(),
        }
        self.db.bets[row["id"]] = row
        return self._out(row)

    def settle_bet(self, bet_id, won, payout):
        b = self.db.bets.get(bet_id)
        if b is None or b["won"] is not None:
            return False
        b.update(won=won, payout=payout)
        return True

    def void_bets(self, round_id):
        n = 0
        for b in self.db.bets.values():
            if b["round_id"] == round_id and b["won"] is None:
                b.update(won=False, payout=Decimal(0))
                n += 1
        return n

    def bet_stats(self, round_id):
        stats = {}
        for b in self.round_bets(round_id):
            s = stats.setdefault(b["bet_choice"], {"bet_choice": b["bet_choice"], "count": 0, "amount": Decimal(0)})
            s["count"] += 1
            s["amount"] += b["amount"]
        return [stats[k] for k in sorted(stats)]

    def lock_wallet(self, user_id):
        if user_id not in self.db.wallets:
            return None
        return {"user_id": user_id, "balance": self.db.wallets[user_id]}

    def debit_wallet(self, user_id, amount):
        bal = self.db.wallets.get(user_id)
        if bal is None or bal < amount:
            return False
        self.db.wallets[user_id] = bal - amount
        return True

    def credit_wallet(self, user_id, amount):
        self.db.wallets[user_id] = self.db.wallets.get(user_id, Decimal(0)) + amount
        return self.db.wallets[user_id]

    def daily_summary(self, since):
        rows = {}
        for b in self.db.bets.values():
            r = self.db.rounds[b["round_id"]]
            if r["status"] != "completed" or r["end_time"] < since:
                continue
            row = rows.setdefault(r["game_type"], {"game_type": r["game_type"], "bets": 0,
                                                   "staked": Decimal(0), "paid": Decimal(0)})
            row["bets"] += 1
            row["staked"] += b["amount"]
            row["paid"] += b["payout"] or 0
        return [rows[k] for k in sorted(rows)]

@pytest.fixture
def memdb():
    return MemoryDB()

@pytest.fixture
def fund(memdb):
    def _fund(user_id, amount):
        memdb.wallets[user_id] = Decimal(str(amount))
    return _fund

@pytest.fixture
def client(memdb):
    from fastapi.testclient import TestClient

    from app import app
    from rounds.api import get_opener

    app.dependency_overrides[get_opener] = lambda: memdb.open
    yield TestClient(app)
    app.dependency_overrides.clear()

@pytest.fixture
def user_headers():
    from auth.deps import make_token

    def _headers(user_id, role="user"):
        return {"Authorization": f"Bearer {make_token(user_id, role)}"}
    return _headers

def after(minutes, seconds=0):
    return T0 + timedelta(minutes=minutes, seconds=seconds)
