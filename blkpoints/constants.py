"""BlkPoints business constants and money conversions.

All money inside the package is integer pence. GBP ``Decimal`` values only
appear at the HTTP/presentation boundary, built with the helpers below.
"""

from datetime import timedelta
from decimal import ROUND_DOWN, Decimal

PENCE_PER_POUND = 100
POINT_VALUE_PENCE = 1  # 1 BlkPoint = £0.01
POINTS_PER_POUND_SPENT = 1

MIN_REDEEM_POINTS = 500
REDEEM_INCREMENT_POINTS = 500  # whole £5 steps
REDEMPTION_CAP_POINTS = 5000  # £50 per rolling window
REDEMPTION_CAP_WINDOW = timedelta(days=30)
MIN_ORDER_MULTIPLIER = 2
MAX_BOOKING_SHARE_PERCENT = 50

REVIEW_BONUS_POINTS = 25
REFERRAL_BONUS_POINTS = 100
REFERRAL_CONFIRM_DELAY = timedelta(hours=24)

_TWO_PLACES = Decimal("0.01")


def points_to_pence(points: int) -> int:
    return points * POINT_VALUE_PENCE


def pence_to_gbp(pence: int) -> Decimal:
    return (Decimal(pence) / PENCE_PER_POUND).quantize(_TWO_PLACES)


def points_to_gbp(points: int) -> Decimal:
    return pence_to_gbp(points_to_pence(points))


def gbp_to_pence(amount: Decimal) -> int:
    """Convert a GBP amount to pence, dropping fractions of a penny."""
    return int((Decimal(amount) * PENCE_PER_POUND).to_integral_value(rounding=ROUND_DOWN))


def booking_points(amount_pence: int) -> int:
    """Points earned for a completed booking: one per whole pound."""
    return (amount_pence // PENCE_PER_POUND) * POINTS_PER_POUND_SPENT


def can_redeem(points: int) -> bool:
    return points >= MIN_REDEEM_POINTS


MIN_REDEEM_PENCE = points_to_pence(MIN_REDEEM_POINTS)
