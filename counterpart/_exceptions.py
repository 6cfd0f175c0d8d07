class SchemaError(ValueError):
    """
    Raised when a cohort file or frame does not match the expected schema.

    Covers missing columns, unparseable values, unknown category levels and
    missing values in required columns. The message names the offending
    column so the input can be fixed at the source.
    """
    pass


class MatchingError(ValueError):
    """Raised when a matching request cannot produce a matched sample."""
    pass
