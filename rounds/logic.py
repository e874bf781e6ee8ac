# rounds/logic.py
import random
from decimal import ROUND_DOWN, Decimal
from itertools import product
from typing import Callable, Iterable, List, NamedTuple

from util.config import NUMBER_MULTIPLIER, VIOLET_MULTIPLIER
from .errors import InvalidOutcome

GAME_TYPES = ["color", "parity", "bigsmall", "dice", "number", "spin"]

# 每個遊戲的局長（分鐘），1/3/5 三條流
DURATIONS = [1, 3, 5]

COLORS = ["red", "green", "violet"]
DIGITS = [str(d) for d in range(10)]
DICE_FACES = [str(d) for d in range(1, 7)]

ZERO = Decimal(0)
CENT = Decimal("0.01")
TWO = Decimal(2)
COLOR_DIGIT_MULTIPLIER = Decimal(10)
DICE_MULTIPLIER = Decimal(6)

# 拉霸：三連線依符號倍率，任兩個相同 1.5 倍
SPIN_SYMBOLS = {
    "cherry": Decimal(2),
    "lemon": Decimal(3),
    "orange": Decimal(4),
    "diamond": Decimal(5),
    "seven": Decimal(7),
    "star": Decimal(10),
}
SPIN_PAIR = Decimal("1.5")
SPIN_CHOICE = "spin"
SPIN_TOKENS = [",".join(reels) for reels in product(SPIN_SYMBOLS, repeat=3)]

class OutcomeCandidate(NamedTuple):
    game_type: str
    token: str
    multiplier: Decimal

class GameRule(NamedTuple):
    tokens: List[str]
    choices: List[str]
    wins: Callable[[str, str], bool]          # (outcome, choice) -> bool
    multiplier: Callable[[str, str], Decimal]  # (outcome, choice) -> 倍率（以下注者所選類別為準）

def spin_multiplier(outcome: str) -> Decimal:
    reels = outcome.split(",")
    if len(reels) != 3 or any(r not in SPIN_SYMBOLS for r in reels):
        return ZERO
    a, b, c = reels
    if a == b == c:
        return SPIN_SYMBOLS[a]
    if a == b or b == c or a == c:
        return SPIN_PAIR
    return ZERO

def color_multiplier(choice: str) -> Decimal:
    if choice == "violet":
        return VIOLET_MULTIPLIER
    if choice in ("red", "green"):
        return TWO
    if choice in DIGITS:
        return COLOR_DIGIT_MULTIPLIER
    return ZERO

def color_wins(outcome: str, choice: str) -> bool:
    """
    顏色局：開出顏色只中同色；開出數字 d 時同時結算
      - 押 d 的數字注
      - 偶數 -> green，奇數 -> red
      - 0 與 5 另外算 violet 中
    """
    if outcome in COLORS:
        return choice == outcome
    if outcome not in DIGITS:
        return False
    if choice == outcome:
        return True
    d = int(outcome)
    if choice == "green":
        return d % 2 == 0
    if choice == "red":
        return d % 2 == 1
    if choice == "violet":
        return d in (0, 5)
    return False

def _equal(outcome: str, choice: str) -> bool:
    return choice == outcome

def _flat(multiplier) -> Callable[[str, str], Decimal]:
    return lambda outcome, choice: Decimal(multiplier)

RULES = {
    "color": GameRule(
        tokens=COLORS + DIGITS,
        choices=COLORS + DIGITS,
        wins=color_wins,
        multiplier=lambda outcome, choice: color_multiplier(choice),
    ),
    "parity": GameRule(["odd", "even"], ["odd", "even"], _equal, _flat(TWO)),
    "bigsmall": GameRule(["big", "small"], ["big", "small"], _equal, _flat(TWO)),
    "dice": GameRule(DICE_FACES, DICE_FACES, _equal, _flat(DICE_MULTIPLIER)),
    # 猜數字倍率由環境變數 NUMBER_MULTIPLIER 決定
    "number": GameRule(DIGITS, DIGITS, _equal, lambda outcome, choice: NUMBER_MULTIPLIER),
    "spin": GameRule(
        tokens=SPIN_TOKENS,
        choices=[SPIN_CHOICE],
        wins=lambda outcome, choice: choice == SPIN_CHOICE and spin_multiplier(outcome) > 0,
        multiplier=lambda outcome, choice: spin_multiplier(outcome),
    ),
}

def rule_for(game_type: str) -> GameRule:
    try:
        return RULES[game_type]
    except KeyError:
        raise ValueError(f"unknown game type: {game_type}")

def valid_choices(game_type: str) -> List[str]:
    return rule_for(game_type).choices

def check_outcome(game_type: str, token: str) -> str:
    if token not in rule_for(game_type).tokens:
        raise InvalidOutcome(f"{token!r} is not a valid {game_type} result")
    return token

def outcome_options(game_type: str) -> List[OutcomeCandidate]:
    rule = rule_for(game_type)
    return [OutcomeCandidate(game_type, t, rule.multiplier(t, t)) for t in rule.tokens]

def win_set(game_type: str, outcome: str) -> Callable[[str], bool]:
    """回傳「此結果下，某個下注選項是否中獎」的判斷函式"""
    rule = rule_for(game_type)
    return lambda choice: rule.wins(outcome, choice)

def payout_multiplier(game_type: str, outcome: str, choice: str) -> Decimal:
    rule = rule_for(game_type)
    if not rule.wins(outcome, choice):
        return ZERO
    return rule.multiplier(outcome, choice)

def money(value) -> Decimal:
    # 金額一律到分，派彩尾數捨去
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_DOWN)

def bet_amount(bet: dict) -> Decimal:
    return Decimal(str(bet["amount"]))

def total_staked(bets: Iterable[dict]) -> Decimal:
    return sum((bet_amount(b) for b in bets), ZERO)

def total_payout(game_type: str, outcome: str, bets: Iterable[dict]) -> Decimal:
    return sum(
        (bet_amount(b) * payout_multiplier(game_type, outcome, b["bet_choice"]) for b in bets),
        ZERO,
    )

def house_profit(game_type: str, outcome: str, bets: List[dict]) -> Decimal:
    return total_staked(bets) - total_payout(game_type, outcome, bets)

def profit_table(game_type: str, bets: List[dict]) -> List[dict]:
    staked = total_staked(bets)
    out = []
    for option in outcome_options(game_type):
        payout = total_payout(game_type, option.token, bets)
        out.append({"result": option.token, "payout": payout, "profit": staked - payout})
    return out

def pick_outcome(game_type: str, bets: List[dict], rng=random) -> str:
    """
    選出莊家獲利最大的結果；同分取表中較前者。
    沒有任何下注時各結果獲利皆為 0，改為均勻隨機，避免永遠開第一個選項。
    """
    tokens = rule_for(game_type).tokens
    if not bets:
        return rng.choice(tokens)

    best, best_profit = tokens[0], None
    for row in profit_table(game_type, bets):
        if best_profit is None or row["profit"] > best_profit:
            best, best_profit = row["result"], row["profit"]
    return best
