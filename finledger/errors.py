from __future__ import annotations


class LedgerError(Exception):
    """Base for request-level failures raised by the ledger engine."""

    status_code = 500

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field

    def to_detail(self) -> dict:
        detail = {"message": self.message, "error": type(self).__name__}
        if self.field:
            detail["field"] = self.field
        return detail


class NotFound(LedgerError):
    status_code = 404


class AccountNotFound(NotFound):
    pass


class TransactionNotFound(NotFound):
    pass


class BudgetNotFound(NotFound):
    pass


class UserNotFound(NotFound):
    pass


class InvalidInput(LedgerError):
    status_code = 400


class SameAccount(InvalidInput):
    pass


class CurrencyConversionError(LedgerError):
    status_code = 400


class MissingCurrency(CurrencyConversionError):
    pass


class MissingOrInvalidRate(CurrencyConversionError):
    pass


class CurrencyMismatch(CurrencyConversionError):
    pass


class MissingOpeningRate(CurrencyConversionError):
    pass


class NoExchangeRateAvailable(CurrencyConversionError):
    def __init__(self, message: str, *, pair: tuple[str, str], field: str | None = None) -> None:
        super().__init__(message, field=field)
        self.pair = pair

    def to_detail(self) -> dict:
        detail = super().to_detail()
        detail["pair"] = f"{self.pair[0]}_TO_{self.pair[1]}"
        return detail


class InconsistentReversalData(LedgerError):
    """Stored transaction cannot be reversed; points at corrupted history."""

    status_code = 500


class ReferentialConflict(LedgerError):
    status_code = 409

    def __init__(self, message: str, *, count: int) -> None:
        super().__init__(message)
        self.count = count

    def to_detail(self) -> dict:
        detail = super().to_detail()
        detail["count"] = self.count
        return detail
