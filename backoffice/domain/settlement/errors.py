"""Settlement errors - typed failures raised by the settlement pipeline steps"""


class SettlementError(Exception):
    """Base class for settlement pipeline failures"""

    pass


class MissingAddressError(SettlementError):
    """Customer has no service address, so tax jurisdiction cannot be determined"""

    pass


class CounterpartyResolutionError(SettlementError):
    """The billing platform customer could not be found, created or synced"""

    pass


class InvoiceCreationError(SettlementError):
    """The billing platform rejected or never answered the invoice request"""

    pass


class JobResolutionError(SettlementError):
    """Merging into or creating the field job failed"""

    pass


class JobNumberExhaustedError(JobResolutionError):
    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"Could not allocate a unique job number after {attempts} attempts")
