# rounds/api.py
from __future__ import annotations

import hmac
import logging
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from auth.deps import current_user_id, require_admin
from util.config import CONTROLLER_TOKEN
from . import service
from .errors import BetRejected, InvalidOutcome, InvalidTransition, RoundError, RoundNotFound
from .schema import (
    BetOut, CancelResp, ControllerSettingReq, ControllerSettingResp, CreateRoundReq,
    DailyReportResp, GameType, HistoryResp, PlaceBetReq, ResultResp, RoundOut,
    RoundStatsResp, SetResultReq, StateResp, TickResp, UserBetOut,
)
from .sql import open_store

logger = logging.getLogger(__name__)

router = APIRouter()

BET_REJECT_STATUS = {
    "round_closed": status.HTTP_409_CONFLICT,
    "already_bet": status.HTTP_409_CONFLICT,
    "insufficient_balance": status.HTTP_400_BAD_REQUEST,
    "invalid_choice": status.HTTP_400_BAD_REQUEST,
    "invalid_amount": status.HTTP_400_BAD_REQUEST,
    "no_wallet": status.HTTP_404_NOT_FOUND,
}

# ===== Helpers =====

def get_opener():
    """每個呼叫各自開 transaction；測試時以記憶體版本覆寫"""
    return open_store

def require_controller(x_controller_token: Optional[str] = Header(None)) -> None:
    if CONTROLLER_TOKEN is None:
        return
    if not x_controller_token or not hmac.compare_digest(x_controller_token, CONTROLLER_TOKEN):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="controller token invalid")

def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(RoundError)
    def round_error_handler(request: Request, exc: RoundError):
        if isinstance(exc, BetRejected):
            code = BET_REJECT_STATUS.get(exc.reason, status.HTTP_400_BAD_REQUEST)
            return JSONResponse(status_code=code, content={"detail": str(exc), "reason": exc.reason})
        if isinstance(exc, RoundNotFound):
            code = status.HTTP_404_NOT_FOUND
        elif isinstance(exc, InvalidOutcome):
            code = status.HTTP_400_BAD_REQUEST
        elif isinstance(exc, InvalidTransition):
            code = status.HTTP_409_CONFLICT
        else:
            code = status.HTTP_400_BAD_REQUEST
        return JSONResponse(status_code=code, content={"detail": str(exc)})

# ====== 自動控制 ======

@router.post("/controller/tick", response_model=TickResp)
def controller_tick(opener=Depends(get_opener), _: None = Depends(require_controller)):
    """
    給外部排程器每 60 秒呼叫一次，不需要 body。
    個別流失敗會列在 errors，整體仍回 success；非預期錯誤回 500。
    """
    try:
        return service.run_tick(opener)
    except Exception as e:
        logger.exception("auto game controller error")
        return JSONResponse(status_code=500, content={"success": False, "error": str(e)})

@router.get("/controller/mode", response_model=ControllerSettingResp)
def controller_mode(opener=Depends(get_opener)):
    with opener() as store:
        return service.controller_setting(store)

# ====== 局況 / 歷史 ======

@router.get("/rounds/current", response_model=StateResp)
def rounds_current(
    game_type: GameType = Query(...),
    duration: int = Query(1, ge=1, le=60),
    opener=Depends(get_opener),
):
    with opener() as store:
        return service.current_round(store, game_type, duration)

@router.get("/rounds/history", response_model=HistoryResp)
def rounds_history(
    game_type: GameType = Query(...),
    duration: int = Query(1, ge=1, le=60),
    limit: int = Query(10, ge=1, le=50),
    opener=Depends(get_opener),
):
    with opener() as store:
        items = store.recent_rounds(game_type, duration, limit)
    return {"game_type": game_type, "duration": duration, "items": items}

# ====== 下注 ======

@router.post("/bets", response_model=BetOut)
def place_bet(body: PlaceBetReq, uid: str = Depends(current_user_id), opener=Depends(get_opener)):
    with opener() as store:
        return service.place_bet(store, uid, body.round_id, body.bet_choice, body.amount)

@router.get("/bets/me", response_model=List[UserBetOut])
def my_recent_bets(
    limit: int = Query(20, ge=1, le=100),
    uid: str = Depends(current_user_id),
    opener=Depends(get_opener),
):
    """個人下注紀錄（新到舊），含該局的遊戲與開獎結果"""
    with opener() as store:
        return store.user_bets(uid, limit)

@router.get("/bets/round/{round_id}", response_model=Optional[BetOut])
def my_bet_for_round(round_id: UUID, uid: str = Depends(current_user_id), opener=Depends(get_opener)):
    with opener() as store:
        return store.user_bet(uid, round_id)

# ====== 管理 API ======

@router.get("/admin/controller", response_model=ControllerSettingResp)
def admin_get_controller(opener=Depends(get_opener), _: None = Depends(require_admin)):
    with opener() as store:
        return service.controller_setting(store)

@router.put("/admin/controller", response_model=ControllerSettingResp)
def admin_put_controller(body: ControllerSettingReq, opener=Depends(get_opener), _: None = Depends(require_admin)):
    with opener() as store:
        return service.save_controller_setting(store, body.enabled, body.durations)

@router.post("/admin/rounds", response_model=RoundOut)
def admin_create_round(body: CreateRoundReq, opener=Depends(get_opener), _: None = Depends(require_admin)):
    with opener() as store:
        return service.create_round(store, body.game_type, body.duration)

@router.post("/admin/rounds/{round_id}/lock", response_model=RoundOut)
def admin_lock_round(round_id: UUID, opener=Depends(get_opener), _: None = Depends(require_admin)):
    with opener() as store:
        return service.lock_round(store, round_id)

@router.post("/admin/rounds/{round_id}/result", response_model=ResultResp)
def admin_set_result(round_id: UUID, body: SetResultReq, opener=Depends(get_opener), _: None = Depends(require_admin)):
    with opener() as store:
        return service.set_result(store, round_id, body.result)

@router.post("/admin/rounds/{round_id}/cancel", response_model=CancelResp)
def admin_cancel_round(round_id: UUID, opener=Depends(get_opener), _: None = Depends(require_admin)):
    with opener() as store:
        return service.cancel_round(store, round_id)

@router.get("/admin/rounds/{round_id}/stats", response_model=RoundStatsResp)
def admin_round_stats(round_id: UUID, opener=Depends(get_opener), _: None = Depends(require_admin)):
    with opener() as store:
        return service.round_stats(store, round_id)

@router.get("/admin/stats/today", response_model=DailyReportResp)
def admin_stats_today(opener=Depends(get_opener), _: None = Depends(require_admin)) -> Dict[str, Any]:
    """以 REPORT_TZ 當地 00:00 起算，各遊戲的下注額、派彩與莊家淨利"""
    with opener() as store:
        return service.daily_report(store)
