"""Exception hierarchy shared by the curation pipeline and its collaborators."""

from __future__ import annotations


class CuratorError(Exception):
    """Base class for all OvR Curator errors."""


class ConfigurationError(CuratorError):
    """Invalid run parameters; raised before any work starts."""


class ModelNotFoundError(CuratorError):
    """No usable classifier model could be found."""


class ModelLoadError(CuratorError):
    """A model file exists but could not be loaded."""


class ClassificationError(CuratorError):
    """Inference failed for one image."""


class StorageError(CuratorError):
    """A dataset storage operation failed (distinct from "not found")."""


class TransientNetworkError(CuratorError):
    """A network call failed in a way that is worth retrying."""
