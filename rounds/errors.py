# rounds/errors.py

class RoundError(Exception):
    pass

class RoundNotFound(RoundError):
    pass

class InvalidTransition(RoundError):
    pass

class InvalidOutcome(RoundError):
    pass

class BetRejected(RoundError):
    """
    下注被拒絕，reason 為固定代碼：
      round_closed | already_bet | insufficient_balance | invalid_choice | invalid_amount | no_wallet
    """
    def __init__(self, reason: str, message: str | None = None):
        super().__init__(message or reason)
        self.reason = reason
