"""Exception types raised by the iterative pangenome pipeline."""


class IterpanError(Exception):
    """Base class for all pipeline errors."""
    pass


class ConfigurationError(IterpanError):
    """Raised for malformed inputs detected before any step executes."""
    pass


class LookupInconsistencyError(IterpanError):
    """Raised when a pseudo-locus cannot be traced back through the hierarchy."""
    pass


class DuplicateGenomeError(LookupInconsistencyError):
    """Raised when an expanded cluster holds two loci from the same genome."""
    pass


class PartialOutputError(IterpanError):
    """Raised when an output file does not contain what was written to it."""
    pass


class ExternalToolError(IterpanError):
    """Raised when an external program fails or cannot be found."""
    pass
