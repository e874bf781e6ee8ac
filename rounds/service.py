# rounds/service.py
import logging
import random
from datetime import datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Callable, ContextManager, Dict, List, Optional

import pytz

from util.config import REPORT_TZ
from . import logic
from .errors import BetRejected, InvalidTransition, RoundNotFound
from .sql import RoundStore

logger = logging.getLogger(__name__)

CONTROLLER_KEY = "auto_game_controller"

StoreOpener = Callable[[], ContextManager[RoundStore]]

def now_utc() -> datetime:
    return datetime.now(timezone.utc)

# ===== 控制開關（每次 tick 重新讀取，不快取） =====

def controller_setting(store) -> dict:
    value = store.get_setting(CONTROLLER_KEY) or {}
    return {
        "enabled": bool(value.get("enabled", True)),
        "durations": dict(value.get("durations") or {}),
    }

def save_controller_setting(store, enabled: bool, durations: Optional[Dict[str, object]] = None) -> dict:
    value = {"enabled": bool(enabled)}
    if durations:
        value["durations"] = durations
    store.put_setting(CONTROLLER_KEY, value)
    logger.info("auto game controller set enabled=%s durations=%s", enabled, durations)
    return controller_setting(store)

def stream_durations(setting: dict, game_type: str) -> List[int]:
    override = setting["durations"].get(game_type)
    if override is None:
        return list(logic.DURATIONS)
    if isinstance(override, int):
        return [override]
    return [int(d) for d in override]

# ===== 開局 =====

def create_round(store, game_type: str, duration: int, now: Optional[datetime] = None) -> dict:
    logic.rule_for(game_type)
    if duration <= 0:
        raise InvalidTransition("duration must be positive")
    if store.active_round(game_type, duration) is not None:
        raise InvalidTransition(f"{game_type}/{duration}min already has an active round")

    now = now or now_utc()
    rn = store.last_round_number(game_type, duration) + 1
    row = store.insert_round(game_type, rn, duration, now, now + timedelta(minutes=duration))
    if row is None:
        # 另一個 tick 剛好搶先開了同號局
        raise InvalidTransition(f"{game_type}/{duration}min round #{rn} already exists")
    logger.info("round created %s/%smin #%s id=%s", game_type, duration, rn, row["id"])
    return row

# ===== 結算（自動、手動共用） =====

def settle_round(store, rnd: dict) -> dict:
    """
    依已定案的結果結算每一注。
    bet 只在 won IS NULL 時寫入，只有真的寫入的那次才加錢包，重跑為 no-op。
    """
    if rnd["status"] != "completed" or rnd["result"] is None:
        raise InvalidTransition(f"round {rnd['id']} has no result yet")

    game_type, outcome = rnd["game_type"], rnd["result"]
    settled, winners, paid = 0, 0, logic.ZERO
    for bet in store.round_bets(rnd["id"]):
        multiplier = logic.payout_multiplier(game_type, outcome, bet["bet_choice"])
        won = multiplier > 0
        payout = logic.money(logic.bet_amount(bet) * multiplier) if won else logic.ZERO
        if not store.settle_bet(bet["id"], won, payout):
            continue
        settled += 1
        if won and payout > 0:
            store.credit_wallet(bet["user_id"], payout)
            winners += 1
            paid += payout

    if settled:
        logger.info(
            "round %s settled result=%s bets=%s winners=%s paid=%s",
            rnd["id"], outcome, settled, winners, paid,
        )
    return {"settled": settled, "winners": winners, "paid": paid}

def _complete(store, rnd: dict, result: str) -> Optional[dict]:
    bets = store.round_bets(rnd["id"])
    if not store.complete_round(rnd["id"], result, len(bets), logic.total_staked(bets)):
        return None
    return store.get_round(rnd["id"])

# ===== 自動控制（單一流） =====

def advance_stream(store, game_type: str, duration: int,
                   now: Optional[datetime] = None, rng=random, reopen: bool = True) -> List[str]:
    """reopen=False 用在已從設定移除的局長：到期照常結算，但不再開下一局"""
    now = now or now_utc()
    tag = f"{duration}min"

    if not store.try_lock_stream(game_type, duration):
        logger.debug("stream %s/%s busy, skipped", game_type, tag)
        return [f"{tag}: busy"]

    active = store.active_round(game_type, duration)
    if active is None:
        if not reopen:
            return []
        row = create_round(store, game_type, duration, now)
        return [f"{tag}: Created #{row['round_number']}"]

    rn = active["round_number"]
    if now < active["end_time"]:
        return [f"{tag}: Open #{rn}"]

    # 到期：鎖單 -> 選結果 -> 結算 -> 開下一局，同一個 tick 內完成
    if active["status"] == "betting":
        store.lock_round(active["id"])

    bets = store.round_bets(active["id"])
    result = logic.pick_outcome(game_type, bets, rng)
    done = _complete(store, active, result)
    if done is None:
        return [f"{tag}: #{rn} already resolved"]

    summary = settle_round(store, done)
    lines = [f"{tag}: Completed #{rn} -> {result} ({summary['winners']} winners)"]

    if not reopen:
        logger.info("stream %s/%s retired after #%s", game_type, tag, rn)
        lines.append(f"{tag}: Retired")
        return lines

    nxt = create_round(store, game_type, duration, now)
    lines.append(f"{tag}: Started #{nxt['round_number']}")
    return lines

def run_tick(opener: StoreOpener, now: Optional[datetime] = None, rng=random) -> dict:
    """
    排程器每分鐘呼叫一次。每條 (game_type, duration) 流各自一個 transaction，
    某條流失敗只記錄，不影響其他流；下一次 tick 會再處理。
    設定裡已移除的局長，若還有進行中的局，仍會在到期時結算收尾。
    """
    now = now or now_utc()
    with opener() as store:
        setting = controller_setting(store)
        live = store.active_streams() if setting["enabled"] else []

    if not setting["enabled"]:
        return {
            "success": True,
            "enabled": False,
            "message": "Auto game controller is disabled",
            "timestamp": now.isoformat(),
        }

    results: Dict[str, List[str]] = {}
    errors: Dict[str, List[str]] = {}
    for game_type in logic.GAME_TYPES:
        results[game_type] = []
        configured = stream_durations(setting, game_type)
        retired = sorted({d for g, d in live if g == game_type} - set(configured))
        streams = [(d, True) for d in configured] + [(d, False) for d in retired]
        for duration, reopen in streams:
            try:
                with opener() as store:
                    results[game_type].extend(
                        advance_stream(store, game_type, duration, now, rng, reopen=reopen)
                    )
            except Exception as e:
                logger.exception("[CONTROLLER][%s/%smin] error", game_type, duration)
                errors.setdefault(game_type, []).append(f"{duration}min: {e}")

    return {
        "success": True,
        "enabled": True,
        "results": results,
        "errors": errors,
        "timestamp": now.isoformat(),
    }

# ===== 管理員手動操作 =====

def load_round(store, round_id) -> dict:
    rnd = store.get_round(round_id)
    if rnd is None:
        raise RoundNotFound(f"round {round_id} not found")
    return rnd

def lock_round(store, round_id) -> dict:
    rnd = load_round(store, round_id)
    if rnd["status"] == "locked":
        return rnd
    if rnd["status"] != "betting" or not store.lock_round(round_id):
        raise InvalidTransition(f"round {round_id} is {rnd['status']}, cannot lock")
    logger.info("round %s locked by admin", round_id)
    return load_round(store, round_id)

def set_result(store, round_id, result: str) -> dict:
    rnd = load_round(store, round_id)
    logic.check_outcome(rnd["game_type"], result)

    if rnd["status"] == "cancelled":
        raise InvalidTransition(f"round {round_id} was cancelled")
    if rnd["status"] == "completed":
        if rnd["result"] != result:
            raise InvalidTransition(f"round {round_id} already resolved as {rnd['result']}")
        # 同一結果再送一次：只補結算，不會重複派彩
        return {"round": rnd, "settlement": settle_round(store, rnd)}

    done = _complete(store, rnd, result)
    if done is None:
        raise InvalidTransition(f"round {round_id} was resolved concurrently")
    logger.info("round %s result set by admin: %s", round_id, result)
    return {"round": done, "settlement": settle_round(store, done)}

def cancel_round(store, round_id) -> dict:
    rnd = load_round(store, round_id)
    if rnd["status"] == "cancelled":
        return {"round": rnd, "refunded": 0, "amount": logic.ZERO}
    if rnd["status"] == "completed":
        raise InvalidTransition(f"round {round_id} already resolved as {rnd['result']}")
    if not store.cancel_round(round_id):
        raise InvalidTransition(f"round {round_id} was resolved concurrently")

    refunded, amount = 0, logic.ZERO
    for bet in store.round_bets(round_id):
        if bet["won"] is not None:
            continue
        stake = logic.bet_amount(bet)
        store.credit_wallet(bet["user_id"], stake)
        refunded += 1
        amount += stake
    store.void_bets(round_id)
    logger.info("round %s cancelled, %s bets refunded (%s)", round_id, refunded, amount)
    return {"round": load_round(store, round_id), "refunded": refunded, "amount": amount}

def round_stats(store, round_id) -> dict:
    rnd = load_round(store, round_id)
    bets = store.round_bets(round_id)
    return {
        "round": rnd,
        "bets": [
            {"bet_choice": s["bet_choice"], "count": int(s["count"]), "amount": s["amount"]}
            for s in store.bet_stats(round_id)
        ],
        "total_bets": len(bets),
        "total_amount": logic.total_staked(bets),
        "profit_table": logic.profit_table(rnd["game_type"], bets),
    }

# ===== 下注 =====

def place_bet(store, user_id: str, round_id, bet_choice: str, amount,
              now: Optional[datetime] = None) -> dict:
    """
    鎖的順序與自動結算相同：先局（FOR SHARE）再錢包（FOR UPDATE），
    同一使用者的下注在錢包列串行；
    任一檢查失敗就丟 BetRejected，整個 transaction rollback。
    """
    now = now or now_utc()
    amount = logic.money(amount)
    if amount <= 0:
        raise BetRejected("invalid_amount", "amount must be positive")

    rnd = store.get_round(round_id, for_share=True)
    if rnd is None:
        raise RoundNotFound(f"round {round_id} not found")
    if store.lock_wallet(user_id) is None:
        raise BetRejected("no_wallet", "wallet not found")
    if bet_choice not in logic.valid_choices(rnd["game_type"]):
        raise BetRejected("invalid_choice", f"{bet_choice!r} is not a valid {rnd['game_type']} bet")
    if rnd["status"] != "betting" or now >= rnd["end_time"]:
        raise BetRejected("round_closed", "betting closed")
    if store.user_bet(user_id, round_id) is not None:
        raise BetRejected("already_bet", "you can only place one bet per round")
    if not store.debit_wallet(user_id, amount):
        raise BetRejected("insufficient_balance", "insufficient balance")

    bet = store.insert_bet(user_id, round_id, bet_choice, amount)
    if bet is None:
        raise BetRejected("already_bet", "you can only place one bet per round")
    return bet

# ===== 查詢 =====

def current_round(store, game_type: str, duration: int, now: Optional[datetime] = None) -> dict:
    logic.rule_for(game_type)
    now = now or now_utc()
    rnd = store.active_round(game_type, duration)
    if rnd is None:
        return {"game_type": game_type, "duration": duration, "phase": "waiting",
                "seconds_left": 0, "round": None}
    if rnd["status"] == "betting" and now < rnd["end_time"]:
        phase = "betting"
        seconds_left = max(0, int((rnd["end_time"] - now).total_seconds()))
    else:
        phase = "locked"
        seconds_left = 0
    return {"game_type": game_type, "duration": duration, "phase": phase,
            "seconds_left": seconds_left, "round": rnd}

def daily_report(store, now: Optional[datetime] = None) -> dict:
    tz = pytz.timezone(REPORT_TZ)
    local_now = (now or now_utc()).astimezone(tz)
    day_start = tz.localize(datetime.combine(local_now.date(), time.min))

    rows = []
    for r in store.daily_summary(day_start.astimezone(timezone.utc)):
        staked, paid = Decimal(str(r["staked"])), Decimal(str(r["paid"]))
        rows.append({
            "game_type": r["game_type"],
            "bets": int(r["bets"]),
            "staked": staked,
            "paid": paid,
            "profit": staked - paid,
        })
    return {"tz": REPORT_TZ, "day_start": day_start.isoformat(), "rows": rows}
