"""
自定義異常類別

集中管理所有業務邏輯異常，方便 API 層統一處理

三大類：
- ValidationError：呼叫端參數不合法，同步拒絕，狀態不變
- StateConflictError：在不允許的時間窗呼叫 API，回報即可，引擎不重試
- TransientError：基礎設施暫時失敗，呼叫端可用同一個 idempotency key 重試
"""


class WageringEngineException(Exception):
    """所有引擎異常的基類"""
    pass


class ValidationError(WageringEngineException):
    pass


class StateConflictError(WageringEngineException):
    pass


class TransientError(WageringEngineException):
    pass


# ============ 查無資料 ============

class RoundNotFound(WageringEngineException):
    """回合不存在"""
    def __init__(self, mode_id, period_number):
        self.mode_id = mode_id
        self.period_number = period_number
        super().__init__(f"Round {mode_id}#{period_number} not found")


# ============ 驗證錯誤 ============

class UnknownModeError(ValidationError):
    """未註冊的遊戲模式"""
    def __init__(self, mode_id):
        self.mode_id = mode_id
        super().__init__(f"Unknown game mode: {mode_id}")


class GameModeConfigConflict(ValidationError):
    """已發布的模式與設定不一致（模式發布後不可變更）"""
    pass


class InvalidBetValueError(ValidationError):
    """下注內容與下注類型不符"""
    pass


class InvalidBetAmountError(ValidationError):
    """下注金額必須 > 0 且最多兩位小數"""
    pass


class InvalidResultNumberError(ValidationError):
    """開獎號碼必須在 0-9"""
    pass


class IdempotencyKeyConflict(ValidationError):
    """同一個 idempotency key 被拿來送另一筆不同的下注"""
    pass


class InsufficientBalanceError(ValidationError):
    """餘額不足"""
    def __init__(self, user_id, requested, available):
        self.user_id = user_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"User {user_id} has insufficient balance: "
            f"requested {requested}, available {available}"
        )


# ============ 狀態衝突 ============

class RoundNotOpenError(StateConflictError):
    """回合不在下注時段"""
    def __init__(self, mode_id, period_number, status=None):
        self.mode_id = mode_id
        self.period_number = period_number
        self.status = status
        detail = f" (status: {status})" if status else ""
        super().__init__(f"Round {mode_id}#{period_number} is not open for bets{detail}")


class RoundStillOpenError(StateConflictError):
    """回合仍在下注中，注單集合還會變動"""
    def __init__(self, mode_id, period_number):
        self.mode_id = mode_id
        self.period_number = period_number
        super().__init__(f"Round {mode_id}#{period_number} is still open")


class RoundNotLockedError(StateConflictError):
    """只有 LOCKED 的回合可以手動設定結果"""
    pass


class ResultAlreadySetError(StateConflictError):
    """此期已經有手動結果"""
    pass


class InvalidStateTransition(StateConflictError):
    """非法的狀態轉換"""
    pass


# ============ 暫時性錯誤 ============

class SettlementTimeoutError(TransientError):
    """結算超過時限，整個 transaction 已回滾"""
    pass


class BalanceStoreUnavailable(TransientError):
    """餘額儲存暫時無法使用"""
    pass
