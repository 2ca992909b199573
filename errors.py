class KioskError(Exception):
    """Base of every error reported to a kiosk client as `{message, error}`."""

    kind = "KioskError"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"message": self.message, "error": self.kind}


class ValidationError(KioskError):
    kind = "ValidationError"
    status_code = 400


class ProductNotFound(KioskError):
    kind = "ProductNotFound"
    status_code = 404


class CustomerNotFound(KioskError):
    kind = "CustomerNotFound"
    status_code = 404


class InsufficientStock(KioskError):
    kind = "InsufficientStock"
    status_code = 409


class InsufficientFunds(KioskError):
    kind = "InsufficientFunds"
    status_code = 402


class DuplicateRequestError(KioskError):
    kind = "DuplicateRequest"
    status_code = 409


class StoreUnavailableError(KioskError):
    kind = "StoreUnavailableError"
    status_code = 503


class OutcomeUnknownError(StoreUnavailableError):
    """The store could not confirm whether a write was committed."""


class PartialFailureError(KioskError):
    """
    Stock was committed but the paired ledger debit could neither be confirmed
    nor undone. The settlement stays on the intent log until reconciled.
    """

    kind = "PartialFailureError"
    status_code = 500

    def __init__(self, message: str, reference: str):
        super().__init__(message)
        self.reference = reference

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["reference"] = self.reference
        return data
