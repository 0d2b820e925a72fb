class LoyaltyError(Exception):
    code = "loyalty_error"


# Validation: user-correctable, message surfaced verbatim.

class LoyaltyValidationError(LoyaltyError):
    code = "validation_error"


class InvalidAmount(LoyaltyValidationError):
    code = "invalid_amount"


class BelowMinimumRedemption(LoyaltyValidationError):
    code = "below_minimum_redemption"


class InvalidIncrement(LoyaltyValidationError):
    code = "invalid_increment"


class BookingBelowMinimum(LoyaltyValidationError):
    code = "booking_below_minimum"


class RedemptionExceedsBookingCap(LoyaltyValidationError):
    code = "redemption_exceeds_booking_cap"


# State: the request is valid but the account cannot satisfy it right now.

class LoyaltyStateError(LoyaltyError):
    code = "state_error"
    action = None


class InsufficientBalance(LoyaltyStateError):
    code = "insufficient_balance"


class RedemptionCapExceeded(LoyaltyStateError):
    code = "redemption_cap_exceeded"


class PhoneNotVerified(LoyaltyStateError):
    code = "phone_not_verified"
    action = "verify_phone"


class DuplicateBonus(LoyaltyStateError):
    code = "duplicate_bonus"


# Fraud: never shown to the referee, recorded in the audit trail instead.

class FraudError(LoyaltyError):
    code = "fraud"


class SelfReferralBlocked(FraudError):
    code = "self_referral_blocked"


class SelfReferral(SelfReferralBlocked):
    code = "self_referral"


class DuplicatePhone(FraudError):
    code = "duplicate_phone"


class DuplicateDevice(FraudError):
    code = "duplicate_device"


class DuplicatePaymentMethod(FraudError):
    code = "duplicate_payment_method"


class NotFirstBooking(FraudError):
    code = "not_first_booking"


# Storage and lifecycle.

class DuplicateIdempotencyKey(LoyaltyError):
    code = "duplicate_idempotency_key"


class ConcurrentUpdateError(LoyaltyError):
    """Another writer won a compare-and-set; the operation may be retried."""
    code = "concurrent_update"


class EntryNotFoundError(LoyaltyError):
    code = "entry_not_found"


class ReferralNotFoundError(LoyaltyError):
    code = "referral_not_found"


class InvalidStateTransitionError(LoyaltyError):
    code = "invalid_state_transition"


class BookingNotFoundError(LoyaltyError):
    code = "booking_not_found"


class AccountNotFoundError(LoyaltyError):
    code = "account_not_found"
