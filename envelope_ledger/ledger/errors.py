"""
Ledger Exceptions

Every store operation either applies completely or raises one of these
before touching state.
"""


class LedgerError(Exception):
    """Base exception for rejected ledger operations."""
    pass


class EnvelopeNotFoundError(LedgerError):
    """Referenced envelope does not exist."""

    def __init__(self, envelope_id: str):
        self.envelope_id = envelope_id
        super().__init__(f"Envelope not found: {envelope_id}")


class TransactionNotFoundError(LedgerError):
    """Referenced transaction does not exist."""

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction not found: {transaction_id}")


class TemplateNotFoundError(LedgerError):
    """Referenced distribution template does not exist."""

    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__(f"Distribution template not found: {template_id}")


class InvalidAmountError(LedgerError):
    """Amount is not a finite decimal in the allowed range."""
    pass


class InvalidTransferError(LedgerError):
    """Transfer request cannot be paired (e.g. same source and destination)."""
    pass


class InvalidEnvelopeError(LedgerError):
    """Envelope fields are invalid (e.g. blank name)."""
    pass


class InvalidTemplateError(LedgerError):
    """Template would have no positive allocation."""
    pass
