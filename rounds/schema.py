# rounds/schema.py
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, Field, PositiveInt, conlist

GameType = Literal["color", "parity", "bigsmall", "dice", "number", "spin"]

class PlaceBetReq(BaseModel):
    round_id: UUID
    bet_choice: str = Field(..., examples=["red"])
    amount: Decimal = Field(..., gt=0, max_digits=14, decimal_places=2)

class CreateRoundReq(BaseModel):
    game_type: GameType
    duration: int = Field(..., ge=1, le=60, description="minutes")

class SetResultReq(BaseModel):
    result: str = Field(..., examples=["red", "7", "seven,seven,lemon"])

class ControllerSettingReq(BaseModel):
    enabled: bool
    # 空清單等於停掉整個遊戲，不接受
    durations: Optional[Dict[GameType, Union[PositiveInt, conlist(PositiveInt, min_length=1)]]] = None

class ControllerSettingResp(BaseModel):
    enabled: bool
    durations: Dict[str, Union[int, List[int]]] = {}

class RoundOut(BaseModel):
    id: UUID
    game_type: str
    round_number: int
    status: str       # 'betting'|'locked'|'completed'|'cancelled'
    start_time: datetime
    end_time: datetime
    duration: int
    result: Optional[str] = None
    total_bets: Optional[int] = None
    total_amount: Optional[Decimal] = None
    created_at: Optional[datetime] = None

class BetOut(BaseModel):
    id: UUID
    user_id: str
    round_id: UUID
    bet_choice: str
    amount: Decimal
    won: Optional[bool] = None
    payout: Optional[Decimal] = None
    created_at: Optional[datetime] = None

class UserBetOut(BetOut):
    game_type: str
    round_number: int
    duration: int
    round_status: str
    result: Optional[str] = None

class StateResp(BaseModel):
    game_type: str
    duration: int
    phase: str        # 'betting'|'locked'|'waiting'
    seconds_left: int
    round: Optional[RoundOut] = None

class HistoryResp(BaseModel):
    game_type: str
    duration: int
    items: List[RoundOut]

class TickResp(BaseModel):
    success: bool
    enabled: bool
    message: Optional[str] = None
    results: Dict[str, List[str]] = {}
    errors: Dict[str, List[str]] = {}
    timestamp: str

class SettlementOut(BaseModel):
    settled: int
    winners: int
    paid: Decimal

class ResultResp(BaseModel):
    round: RoundOut
    settlement: SettlementOut

class CancelResp(BaseModel):
    round: RoundOut
    refunded: int
    amount: Decimal

class BetStat(BaseModel):
    bet_choice: str
    count: int
    amount: Decimal

class ProfitRow(BaseModel):
    result: str
    payout: Decimal
    profit: Decimal

class RoundStatsResp(BaseModel):
    round: RoundOut
    bets: List[BetStat]
    total_bets: int
    total_amount: Decimal
    profit_table: List[ProfitRow]

class DailyRow(BaseModel):
    game_type: str
    bets: int
    staked: Decimal
    paid: Decimal
    profit: Decimal

class DailyReportResp(BaseModel):
    tz: str
    day_start: str
    rows: List[DailyRow]
