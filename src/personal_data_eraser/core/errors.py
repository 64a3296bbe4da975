from __future__ import annotations


class PreconditionError(RuntimeError):
    """Raised before a run starts; nothing has been mutated."""


class TenantResolutionError(PreconditionError):
    pass


class CatalogError(ValueError):
    pass


class SettingsError(ValueError):
    pass
