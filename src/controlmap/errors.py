"""Exception hierarchy for the mapping engine."""

from __future__ import annotations


class ControlMapError(Exception):
    """Base class for all controlmap errors."""


class CatalogUnavailableError(ControlMapError):
    """Framework definition is missing or the catalog cannot be read."""

    reason = "catalog"


class RegistryUnavailableError(ControlMapError):
    """Organization controls cannot be listed."""

    reason = "registry"


class JobTimeoutError(ControlMapError):
    """A job exceeded its wall-clock budget."""

    reason = "timeout"


class MappingNotFoundError(ControlMapError, KeyError):
    pass


class JobNotFoundError(ControlMapError, KeyError):
    pass
