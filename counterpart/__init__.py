import logging

from ._exceptions import MatchingError, SchemaError
from .cohort import DEFAULT_COVARIATES, load_cohort, prepare_cohort, simulate_cohort, write_cohort
from .propensity import PropensityModel, PropensityResult
from .matching import MATCH_VARIANTS, MatchedSample, MatchSpec, NearestNeighborMatcher
from .balance import BalanceReport, assess_balance, balance_table, effective_sample_size
from .outcomes import OutcomeResult, conditional_logit, mixed_linear, mixed_logit
from .analysis import AnalysisReport, PropensityAnalysis, VariantResult
from .refutations import MatchingRefutationReport, RefutationCheck
from .refutations._check import Assumption

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "MatchingError", "SchemaError",
    "DEFAULT_COVARIATES", "load_cohort", "prepare_cohort", "simulate_cohort", "write_cohort",
    "PropensityModel", "PropensityResult",
    "MATCH_VARIANTS", "MatchedSample", "MatchSpec", "NearestNeighborMatcher",
    "BalanceReport", "assess_balance", "balance_table", "effective_sample_size",
    "OutcomeResult", "conditional_logit", "mixed_linear", "mixed_logit",
    "AnalysisReport", "PropensityAnalysis", "VariantResult",
    "MatchingRefutationReport", "RefutationCheck",
    "Assumption",
]
