"""
Typed failures raised by the imsearch core.

Every recoverable condition surfaces as a subclass of ImsearchError so the
command layer can report it and exit cleanly. Only DatabaseCorrupt is a
hard stop; the rest are scoped to the operation that raised them.
"""


class ImsearchError(Exception):
    """Base class for all imsearch failures."""


class InvalidImage(ImsearchError):
    """Image file is unreadable or cannot be decoded."""


class DuplicateImage(ImsearchError):
    """An image with the same identifier is already in the store."""


class NotFound(ImsearchError):
    """Requested image identifier is not in the store."""


class DatabaseCorrupt(ImsearchError):
    """On-disk store or index does not match its own bookkeeping."""


class ConfigInvalid(ImsearchError):
    """A configuration option is out of range."""


class IndexBuildFailure(ImsearchError):
    """The LSH index could not be built; the previous index stays live."""


class IndexNotBuilt(ImsearchError):
    """Search was requested before any index was built for the store."""


class ReadOnlyStore(ImsearchError):
    """An append was attempted on a store opened without write access."""
