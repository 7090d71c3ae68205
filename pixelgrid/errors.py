# pixelgrid/errors.py


class PixelError(Exception):
    code = "pixel_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class MissingOwnerIdentity(PixelError):
    code = "missing_owner_identity"


class OutOfBounds(PixelError):
    code = "out_of_bounds"


class BulkTooLarge(PixelError):
    code = "bulk_too_large"


class BidTooLow(PixelError):
    """
    The bid is under the computed minimum. `minimum_bid` lets the caller retry.
    """
    code = "bid_too_low"

    def __init__(self, minimum_bid: int, message: str = ""):
        super().__init__(message or f"Bid must be at least {minimum_bid}")
        self.minimum_bid = minimum_bid

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["minimum_bid"] = self.minimum_bid
        return data


class ActiveProtectionViolation(BidTooLow):
    code = "active_protection_violation"

    def __init__(self, required_bid: int, message: str = ""):
        super().__init__(required_bid, message or f"Cell is protected; bid must be at least {required_bid}")


class AmountMismatch(PixelError):
    code = "amount_mismatch"

    def __init__(self, expected_amount: int, actual_amount: int, message: str = ""):
        super().__init__(message or f"Expected amount {expected_amount}, got {actual_amount}")
        self.expected_amount = expected_amount
        self.actual_amount = actual_amount

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["expected_amount"] = self.expected_amount
        return data


class StaleWrite(PixelError):
    """
    The stored price no longer matches the price seen at quote time.
    """
    code = "stale_write"


class DuplicateSettlement(PixelError):
    code = "duplicate_settlement"


class SessionNotFound(PixelError):
    code = "session_not_found"


class InvalidGatewayEvent(PixelError):
    code = "invalid_gateway_event"


class InvalidBulkRequest(PixelError):
    code = "invalid_bulk_request"
