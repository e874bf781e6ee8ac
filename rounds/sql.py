# rounds/sql.py
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Optional

from psycopg.types.json import Jsonb

from util.db import db

def ensure_schema():
    with db() as conn, conn.cursor() as cur:
        # 錢包由外部註冊流程建立，這裡只確保表存在
        cur.execute("""
        CREATE TABLE IF NOT EXISTS wallets (
          user_id TEXT PRIMARY KEY,
          balance NUMERIC(14,2) NOT NULL DEFAULT 0 CHECK (balance >= 0),
          updated_at TIMESTAMPTZ DEFAULT now()
        );
        """)

        cur.execute("""
        CREATE TABLE IF NOT EXISTS rounds (
          id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
          game_type TEXT NOT NULL,
          round_number INT NOT NULL,
          status TEXT NOT NULL DEFAULT 'betting', -- betting | locked | completed | cancelled
          start_time TIMESTAMPTZ NOT NULL,
          end_time TIMESTAMPTZ NOT NULL,
          duration INT NOT NULL,                  -- 分鐘
          result TEXT,
          total_bets INT,
          total_amount NUMERIC(14,2),
          created_at TIMESTAMPTZ DEFAULT now()
        );
        """)
        cur.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS uniq_round_stream_no
        ON rounds (game_type, duration, round_number);
        """)
        # 同一條流同時最多一局在 betting/locked
        cur.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS uniq_round_stream_active
        ON rounds (game_type, duration) WHERE status IN ('betting', 'locked');
        """)

        cur.execute("""
        CREATE TABLE IF NOT EXISTS bets (
          id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
          user_id TEXT NOT NULL,
          round_id UUID NOT NULL REFERENCES rounds(id),
          bet_choice TEXT NOT NULL,
          amount NUMERIC(14,2) NOT NULL CHECK (amount > 0),
          won BOOLEAN,
          payout NUMERIC(14,2),
          created_at TIMESTAMPTZ DEFAULT now()
        );
        """)
        cur.execute("CREATE UNIQUE INDEX IF NOT EXISTS uniq_bet_user_round ON bets (user_id, round_id);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_bets_round ON bets (round_id);")

        cur.execute("""
        CREATE TABLE IF NOT EXISTS app_settings (
          key TEXT PRIMARY KEY,
          value JSONB NOT NULL,
          updated_at TIMESTAMPTZ DEFAULT now()
        );
        """)
        conn.commit()

class RoundStore:
    """
    rounds / bets / wallets / app_settings 的存取。
    所有狀態轉換都是條件式 UPDATE，回傳是否真的命中一列，
    重跑同一個動作不會重複寫入。
    """

    def __init__(self, cur):
        self.cur = cur

    # ---- 設定 ----

    def get_setting(self, key: str) -> Optional[dict]:
        self.cur.execute("SELECT value FROM app_settings WHERE key=%s;", (key,))
        row = self.cur.fetchone()
        return row["value"] if row else None

    def put_setting(self, key: str, value: dict) -> dict:
        self.cur.execute("""
          INSERT INTO app_settings (key, value, updated_at)
          VALUES (%s, %s, now())
          ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value, updated_at = now()
          RETURNING value;
        """, (key, Jsonb(value)))
        return self.cur.fetchone()["value"]

    # ---- 局 ----

    def try_lock_stream(self, game_type: str, duration: int) -> bool:
        # transaction 結束自動釋放
        self.cur.execute(
            "SELECT pg_try_advisory_xact_lock(hashtext(%s)) AS got;",
            (f"round-stream:{game_type}:{duration}",),
        )
        return bool(self.cur.fetchone()["got"])

    def active_round(self, game_type: str, duration: int) -> Optional[dict]:
        self.cur.execute("""
          SELECT * FROM rounds
          WHERE game_type=%s AND duration=%s AND status IN ('betting', 'locked')
          ORDER BY created_at DESC
          LIMIT 1;
        """, (game_type, duration))
        return self.cur.fetchone()

    def last_round_number(self, game_type: str, duration: int) -> int:
        self.cur.execute("""
          SELECT COALESCE(MAX(round_number), 0) AS m
          FROM rounds
          WHERE game_type=%s AND duration=%s;
        """, (game_type, duration))
        return int(self.cur.fetchone()["m"])

    def insert_round(self, game_type: str, round_number: int, duration: int,
                     start_time: datetime, end_time: datetime) -> Optional[dict]:
        self.cur.execute("""
          INSERT INTO rounds (game_type, round_number, duration, start_time, end_time, status)
          VALUES (%s, %s, %s, %s, %s, 'betting')
          ON CONFLICT DO NOTHING
          RETURNING *;
        """, (game_type, round_number, duration, start_time, end_time))
        return self.cur.fetchone()

    def get_round(self, round_id, for_share: bool = False) -> Optional[dict]:
        # 下注時加 FOR SHARE，避免與鎖單的 UPDATE 交錯
        lock = " FOR SHARE" if for_share else ""
        self.cur.execute(f"SELECT * FROM rounds WHERE id=%s{lock};", (round_id,))
        return self.cur.fetchone()

    def lock_round(self, round_id) -> bool:
        self.cur.execute("""
          UPDATE rounds SET status='locked'
          WHERE id=%s AND status='betting'
          RETURNING id;
        """, (round_id,))
        return self.cur.fetchone() is not None

    def complete_round(self, round_id, result: str, total_bets: int, total_amount: Decimal) -> bool:
        self.cur.execute("""
          UPDATE rounds
          SET status='completed', result=%s, total_bets=%s, total_amount=%s
          WHERE id=%s AND status IN ('betting', 'locked') AND result IS NULL
          RETURNING id;
        """, (result, total_bets, total_amount, round_id))
        return self.cur.fetchone() is not None

    def cancel_round(self, round_id) -> bool:
        self.cur.execute("""
          UPDATE rounds SET status='cancelled'
          WHERE id=%s AND status IN ('betting', 'locked') AND result IS NULL
          RETURNING id;
        """, (round_id,))
        return self.cur.fetchone() is not None

    def active_streams(self) -> list:
        """目前有進行中局的 (game_type, duration)"""
        self.cur.execute("""
          SELECT DISTINCT game_type, duration FROM rounds
          WHERE status IN ('betting', 'locked')
          ORDER BY game_type, duration;
        """)
        return [(r["game_type"], r["duration"]) for r in self.cur.fetchall()]

    def recent_rounds(self, game_type: str, duration: int, limit: int = 10) -> list:
        self.cur.execute("""
          SELECT * FROM rounds
          WHERE game_type=%s AND duration=%s
          ORDER BY round_number DESC
          LIMIT %s;
        """, (game_type, duration, limit))
        return self.cur.fetchall()

    # ---- 下注 ----

    def round_bets(self, round_id) -> list:
        self.cur.execute("""
          SELECT id, user_id, round_id, bet_choice, amount, won, payout, created_at
          FROM bets
          WHERE round_id=%s
          ORDER BY created_at, id;
        """, (round_id,))
        return self.cur.fetchall()

    def user_bet(self, user_id: str, round_id) -> Optional[dict]:
        self.cur.execute("SELECT * FROM bets WHERE user_id=%s AND round_id=%s;", (user_id, round_id))
        return self.cur.fetchone()

    def user_bets(self, user_id: str, limit: int = 20) -> list:
        # 個人下注紀錄，附上該局的遊戲與開獎結果
        self.cur.execute("""
          SELECT b.id, b.user_id, b.round_id, b.bet_choice, b.amount, b.won, b.payout, b.created_at,
                 r.game_type, r.round_number, r.duration, r.status AS round_status, r.result
          FROM bets b
          JOIN rounds r ON r.id = b.round_id
          WHERE b.user_id=%s
          ORDER BY b.created_at DESC, b.id
          LIMIT %s;
        """, (user_id, limit))
        return self.cur.fetchall()

    def insert_bet(self, user_id: str, round_id, bet_choice: str, amount: Decimal) -> Optional[dict]:
        self.cur.execute("""
          INSERT INTO bets (user_id, round_id, bet_choice, amount)
          VALUES (%s, %s, %s, %s)
          ON CONFLICT (user_id, round_id) DO NOTHING
          RETURNING *;
        """, (user_id, round_id, bet_choice, amount))
        return self.cur.fetchone()

    def settle_bet(self, bet_id, won: bool, payout: Decimal) -> bool:
        self.cur.execute("""
          UPDATE bets SET won=%s, payout=%s
          WHERE id=%s AND won IS NULL
          RETURNING id;
        """, (won, payout, bet_id))
        return self.cur.fetchone() is not None

    def void_bets(self, round_id) -> int:
        self.cur.execute("""
          UPDATE bets SET won=false, payout=0
          WHERE round_id=%s AND won IS NULL;
        """, (round_id,))
        return self.cur.rowcount or 0

    def bet_stats(self, round_id) -> list:
        self.cur.execute("""
          SELECT bet_choice, COUNT(*) AS count, COALESCE(SUM(amount), 0) AS amount
          FROM bets
          WHERE round_id=%s
          GROUP BY bet_choice
          ORDER BY bet_choice;
        """, (round_id,))
        return self.cur.fetchall()

    # ---- 錢包 ----

    def lock_wallet(self, user_id: str) -> Optional[dict]:
        self.cur.execute("SELECT user_id, balance FROM wallets WHERE user_id=%s FOR UPDATE;", (user_id,))
        return self.cur.fetchone()

    def debit_wallet(self, user_id: str, amount: Decimal) -> bool:
        self.cur.execute("""
          UPDATE wallets SET balance = balance - %s, updated_at = now()
          WHERE user_id=%s AND balance >= %s
          RETURNING balance;
        """, (amount, user_id, amount))
        return self.cur.fetchone() is not None

    def credit_wallet(self, user_id: str, amount: Decimal) -> Decimal:
        self.cur.execute("""
          INSERT INTO wallets (user_id, balance) VALUES (%s, %s)
          ON CONFLICT (user_id) DO UPDATE
            SET balance = wallets.balance + EXCLUDED.balance, updated_at = now()
          RETURNING balance;
        """, (user_id, amount))
        return self.cur.fetchone()["balance"]

    # ---- 報表 ----

    def daily_summary(self, since: datetime) -> list:
        self.cur.execute("""
          SELECT r.game_type,
                 COUNT(b.id) AS bets,
                 COALESCE(SUM(b.amount), 0) AS staked,
                 COALESCE(SUM(b.payout), 0) AS paid
          FROM rounds r
          JOIN bets b ON b.round_id = r.id
          WHERE r.status = 'completed' AND r.end_time >= %s
          GROUP BY r.game_type
          ORDER BY r.game_type;
        """, (since,))
        return self.cur.fetchall()

@contextmanager
def open_store():
    """一個 transaction；正常離開 commit，出錯 rollback"""
    with db() as conn, conn.cursor() as cur:
        yield RoundStore(cur)
