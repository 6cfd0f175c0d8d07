from .matching import MatchingRefutationReport
from ._check import Assumption, RefutationCheck, RefutationReport

__all__ = ["MatchingRefutationReport", "Assumption", "RefutationCheck", "RefutationReport"]
