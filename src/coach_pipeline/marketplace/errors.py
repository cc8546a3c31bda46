"""Errors raised by marketplace services for supplier and customer actions."""

from __future__ import annotations


class MarketplaceError(RuntimeError):
    """Base class for rejected marketplace actions."""


class BidInvitationNotFoundError(MarketplaceError):
    pass


class BidInvitationExpiredError(MarketplaceError):
    pass


class BidAlreadySubmittedError(MarketplaceError):
    pass


class QuoteNotFoundError(MarketplaceError):
    pass


class QuoteNotAcceptableError(MarketplaceError):
    pass


class QuoteExpiredError(MarketplaceError):
    pass


class EnquiryNotFoundError(MarketplaceError):
    pass
