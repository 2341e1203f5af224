"""Exceptions raised by betadiv analyses."""

from __future__ import annotations


class BetaDiversityError(ValueError):
    """Base class for all analysis errors."""


class InvalidRouteError(BetaDiversityError):
    """Unknown ordination method."""


class MissingDistanceError(BetaDiversityError):
    """The operation needs a selected distance matrix and none is set."""


class MissingGroupError(BetaDiversityError):
    """No grouping variable could be resolved."""


class EmptyGroupError(BetaDiversityError):
    """A referenced group has no member with a distance entry."""


class InsufficientDataError(BetaDiversityError):
    """Too few samples, groups or dimensions for the computation."""


class ConflictingOptionsError(BetaDiversityError):
    """Mutually exclusive options were given together."""
