"""
派彩服務：顏色分區與派彩計算

純計算邏輯，不碰資料庫也不改狀態（狀態由 SettlementEngine 負責）
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN

from models import BetType, Color


CENT = Decimal("0.01")

# 固定的 10 格分區，派彩倍率依賴這張表，不可調整
#
#   號碼     顏色
#   0, 5     VIOLET   （2/10）
#   1,3,7,9  GREEN    （4/10）
#   2,4,6,8  RED      （4/10）
COLOR_PARTITION = {
    0: Color.VIOLET,
    1: Color.GREEN,
    2: Color.RED,
    3: Color.GREEN,
    4: Color.RED,
    5: Color.VIOLET,
    6: Color.RED,
    7: Color.GREEN,
    8: Color.RED,
    9: Color.GREEN,
}

NUMBER_VALUES = tuple(str(n) for n in range(10))
COLOR_VALUES = tuple(color.value for color in Color)


def color_for_number(number: int) -> Color:
    """
    號碼對應的顏色

    異常：
        ValueError: number 不在 0-9
    """
    try:
        return COLOR_PARTITION[number]
    except KeyError:
        raise ValueError(f"Result number must be 0-9, got {number!r}")


def quantize_money(amount) -> Decimal:
    """金額統一到分，無條件捨去（派彩不會多付）"""
    return Decimal(amount).quantize(CENT, rounding=ROUND_DOWN)


@dataclass(frozen=True)
class PayoutPolicy:
    """
    派彩倍率（含本金的總返還倍數）

    ┌──────────────┬──────────────┐
    │ 下注         │ 中獎返還     │
    ├──────────────┼──────────────┤
    │ 號碼 0-9     │ amount × 9   │
    │ RED / GREEN  │ amount × 2   │
    │ VIOLET       │ amount × 4.5 │
    └──────────────┴──────────────┘

    本金在下注時已經扣除，所以中獎淨利 = 返還 - 本金
    """
    number_multiplier: Decimal = Decimal("9")
    red_green_multiplier: Decimal = Decimal("2")
    violet_multiplier: Decimal = Decimal("4.5")

    @classmethod
    def from_settings(cls, settings) -> "PayoutPolicy":
        return cls(
            number_multiplier=Decimal(settings.payout_number_multiplier),
            red_green_multiplier=Decimal(settings.payout_red_green_multiplier),
            violet_multiplier=Decimal(settings.payout_violet_multiplier),
        )

    def multiplier_for(self, bet_type: BetType, bet_value: str) -> Decimal:
        if bet_type == BetType.NUMBER:
            return self.number_multiplier
        if bet_value == Color.VIOLET.value:
            return self.violet_multiplier
        return self.red_green_multiplier


def is_winning_bet(bet_type: BetType, bet_value: str, result_number: int, result_color: Color) -> bool:
    """
    判斷注單是否中獎

    - 號碼注：bet_value 與開獎號碼完全相同
    - 顏色注：bet_value 與開獎顏色相同
    """
    if bet_type == BetType.NUMBER:
        return bet_value == str(result_number)
    return bet_value == result_color.value


def calculate_win(
    bet_type: BetType,
    bet_value: str,
    amount: Decimal,
    result_number: int,
    result_color: Color,
    policy: PayoutPolicy
) -> Decimal:
    """
    計算單筆注單的返還金額（未中獎為 0）

    範例：
        號碼注 "7"，金額 10，開 7      -> 90
        顏色注 VIOLET，金額 10，開 5   -> 45
        顏色注 RED，金額 10，開 7      -> 0
    """
    if not is_winning_bet(bet_type, bet_value, result_number, result_color):
        return Decimal("0.00")
    return quantize_money(amount * policy.multiplier_for(bet_type, bet_value))


def calculate_profit(amount: Decimal, actual_win: Decimal) -> Decimal:
    """淨利：中獎 = 返還 - 本金，未中獎 = -本金"""
    return quantize_money(actual_win) - quantize_money(amount)
