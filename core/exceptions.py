"""
自定義異常類別

集中管理所有業務邏輯異常，方便 API 層統一處理。
每個類別帶有 status_code，api.errors.to_http 依此轉成 HTTPException。
"""


class RoundEngineError(Exception):
    """所有業務異常的基類"""
    status_code = 500

    def __init__(self, message=None):
        super().__init__(message or self.__class__.__name__)

    @property
    def code(self):
        return self.__class__.__name__


# ============ Validation（400）============

class ValidationFailed(RoundEngineError):
    status_code = 400


class InvalidRoundId(ValidationFailed):
    """round_id 不是合法的 YYYYMMDDHHMM"""
    def __init__(self, round_id):
        self.round_id = round_id
        super().__init__(f"Invalid round id: {round_id!r}")


class InvalidCard(ValidationFailed):
    """卡片必須是 1..12"""
    def __init__(self, card):
        self.card = card
        super().__init__(f"Invalid card: {card!r} (must be 1..12)")


class InvalidStake(ValidationFailed):
    """下注金額必須 > 0 且不超過 max_stake"""
    pass


class UnknownKey(ValidationFailed):
    """Settings key 不在允許清單"""
    def __init__(self, key):
        self.key = key
        super().__init__(f"Unknown settings key: {key}")


class BadTimeFormat(ValidationFailed):
    """時間字串格式錯誤（HH:MM 或 YYYY-MM-DD HH:MM:SS）"""
    def __init__(self, value):
        self.value = value
        super().__init__(f"Bad time format: {value!r}")


class InvalidSettingValue(ValidationFailed):
    """Settings 值無法解析成對應型別"""
    def __init__(self, key, value):
        self.key = key
        self.value = value
        super().__init__(f"Invalid value for {key}: {value!r}")


# ============ Auth（401 / 403）============

class AuthError(RoundEngineError):
    status_code = 401


class MissingToken(AuthError):
    def __init__(self):
        super().__init__("Missing bearer token")


class InvalidToken(AuthError):
    def __init__(self, reason="Invalid token"):
        super().__init__(reason)


class ExpiredToken(AuthError):
    def __init__(self):
        super().__init__("Token expired")


class InvalidCredentials(AuthError):
    def __init__(self):
        super().__init__("Invalid handle or password")


class Forbidden(AuthError):
    status_code = 403

    def __init__(self, reason="Forbidden"):
        super().__init__(reason)


# ============ NotFound（404）============

class NotFound(RoundEngineError):
    status_code = 404


class RoundNotFound(NotFound):
    """回合不存在"""
    def __init__(self, round_id):
        self.round_id = round_id
        super().__init__(f"Round {round_id} not found")


class SlipNotFound(NotFound):
    """注單不存在（slip_id 或 barcode）"""
    def __init__(self, identifier):
        self.identifier = identifier
        super().__init__(f"Slip {identifier} not found")


class UserNotFound(NotFound):
    def __init__(self, user_id):
        self.user_id = user_id
        super().__init__(f"User {user_id} not found")


# ============ State（400）============

class StateError(RoundEngineError):
    status_code = 400


class RoundNotOpen(StateError):
    """回合不是 active 或已過 end_at"""
    def __init__(self, round_id):
        self.round_id = round_id
        super().__init__(f"Round {round_id} is not open for betting")


class WrongStatus(StateError):
    """狀態不允許此操作"""
    pass


class AlreadySettled(StateError):
    """回合已結算（或正在結算）"""
    def __init__(self, round_id):
        self.round_id = round_id
        super().__init__(f"Round {round_id} is already settled")


class AlreadyClaimed(StateError):
    def __init__(self, slip_id):
        self.slip_id = slip_id
        super().__init__(f"Slip {slip_id} is already claimed")


class SlipCancelled(StateError):
    def __init__(self, slip_id):
        self.slip_id = slip_id
        super().__init__(f"Slip {slip_id} is cancelled")


class SettlementNotReady(StateError):
    """回合尚未結算，無法領獎"""
    def __init__(self, round_id):
        self.round_id = round_id
        super().__init__(f"Round {round_id} is not settled yet")


class AccountInactive(StateError):
    """帳號狀態不是 active"""
    def __init__(self, user_id):
        self.user_id = user_id
        super().__init__(f"User {user_id} is not active")


# ============ Balance（400 / 409）============

class InsufficientFunds(RoundEngineError):
    status_code = 400

    def __init__(self, balance, required):
        self.balance = balance
        self.required = required
        super().__init__(f"Insufficient balance: {balance} < {required}")


class ConcurrencyExceeded(RoundEngineError):
    """餘額條件更新重試次數用完"""
    status_code = 409

    def __init__(self, user_id):
        self.user_id = user_id
        super().__init__(f"Balance update for user {user_id} kept conflicting")


# ============ Transient（5xx，可重試）============

class TransientError(RoundEngineError):
    status_code = 503


class TransientStore(TransientError):
    pass


class OperationTimeout(TransientError):
    status_code = 504

    def __init__(self, operation, budget):
        self.operation = operation
        self.budget = budget
        super().__init__(f"{operation} exceeded its {budget}s budget")
