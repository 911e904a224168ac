"""
Result shaping: native connector output -> uniform tabular rows.
"""

from querydispatch.engines.normalizer import (
    NativeResult,
    NormalizedResult,
    flatten_document,
    normalize,
)

__all__ = ["NativeResult", "NormalizedResult", "flatten_document", "normalize"]
