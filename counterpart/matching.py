from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd
from sklearn.neighbors import NearestNeighbors

from ._exceptions import MatchingError
from .propensity import _check_treatment, _logit

logger = logging.getLogger(__name__)

ESTIMANDS = ("ATT", "ATE", "ATC")
DISTANCES = ("logit", "ps")
ORDERS    = ("data", "largest", "smallest", "random")

_ORDER_SEED = 8_675_309


# ── Match parameters ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class MatchSpec:
    """
    Parameters of one nearest-neighbour matching variant.

    ``caliper`` is measured in standard deviations of the matching score
    (``distance``) over the whole sample, so ``caliper=0.2`` with
    ``distance="logit"`` is the usual 0.2 SD of the logit of the propensity
    score.
    """

    name: str
    ratio: int = 1
    replace: bool = False
    caliper: float | None = None
    estimand: str = "ATT"
    distance: str = "logit"
    order: str = "data"

    def __post_init__(self) -> None:
        if isinstance(self.ratio, bool) or not isinstance(self.ratio, (int, np.integer)) or self.ratio < 1:
            raise ValueError(f"ratio must be a positive integer, got {self.ratio!r}")
        if self.caliper is not None and not self.caliper > 0:
            raise ValueError(f"caliper must be positive or None, got {self.caliper!r}")
        if self.estimand not in ESTIMANDS:
            raise ValueError(f"estimand must be one of {ESTIMANDS}, got {self.estimand!r}")
        if self.distance not in DISTANCES:
            raise ValueError(f"distance must be one of {DISTANCES}, got {self.distance!r}")
        if self.order not in ORDERS:
            raise ValueError(f"order must be one of {ORDERS}, got {self.order!r}")

    def describe(self) -> str:
        """One-line plain-language description of the variant."""
        score = "logit of the propensity score" if self.distance == "logit" else "propensity score"
        parts = [
            f"1:{self.ratio} nearest-neighbour on the {score}",
            "with replacement" if self.replace else "without replacement",
        ]
        if self.caliper is not None:
            parts.append(f"caliper {self.caliper:g} SD")
        parts.append(f"estimand {self.estimand}")
        return ", ".join(parts)


MATCH_VARIANTS: list[MatchSpec] = [
    MatchSpec("1:1", ratio=1),
    MatchSpec("1:2", ratio=2),
    MatchSpec("1:3 with replacement", ratio=3, replace=True),
    MatchSpec("1:1 caliper 0.2", ratio=1, caliper=0.2),
]


# ── Matched sample ─────────────────────────────────────────────────────────────

class MatchedSample:
    """
    The output of one matching run.

    ``pairs`` has one row per (focal unit, matched unit) link; ``data`` is the
    long-format matched subset with one row per group member, where a unit
    reused across groups (matching with replacement) appears once per group.
    ``weights`` holds one weight per row of the analysed frame and is what
    balance diagnostics use.
    """

    def __init__(
        self,
        spec: MatchSpec,
        source: pd.DataFrame,
        treatment: str,
        pairs: pd.DataFrame,
        n_focal_unmatched: int,
        caliper_width: float | None,
        scores: np.ndarray,
    ) -> None:
        self._spec = spec
        self._scores = scores
        self._source = source
        self._treatment = treatment
        self._pairs = pairs
        self._n_focal_unmatched = n_focal_unmatched
        self._caliper_width = caliper_width
        self._weights = self._compute_weights()

    def _compute_weights(self) -> np.ndarray:
        n = len(self._source)
        T = self._source[self._treatment].values.astype(int)
        pairs = self._pairs

        # One pass per focal arm; ATE sums the two passes.
        focal_arm = T[pairs["focal_row"].values]
        weights = np.zeros(n)
        for arm in (1, 0):
            in_pass = pairs[focal_arm == arm]
            if not in_pass.empty:
                weights += self._pass_weights(in_pass, n)
        return weights

    @staticmethod
    def _pass_weights(pairs: pd.DataFrame, n: int) -> np.ndarray:
        focal = np.zeros(n)
        focal[pairs["focal_row"].unique()] = 1.0

        # Each matched unit carries 1/k of its group, summed over groups.
        group_size = pairs.groupby("match_id")["match_row"].transform("size").values
        contrib = np.zeros(n)
        np.add.at(contrib, pairs["match_row"].values, 1.0 / group_size)

        used = contrib > 0
        contrib[used] *= used.sum() / contrib[used].sum()
        return focal + contrib

    @property
    def spec(self) -> MatchSpec:
        return self._spec

    @property
    def treatment(self) -> str:
        return self._treatment

    @property
    def source(self) -> pd.DataFrame:
        """The frame that was matched (unmatched units included)."""
        return self._source

    @property
    def pairs(self) -> pd.DataFrame:
        """Links: ``focal_row``, ``match_row``, ``match_id``, ``distance``."""
        return self._pairs.copy()

    @property
    def data(self) -> pd.DataFrame:
        """
        Matched subset in long format.

        Adds ``match_id``, ``matched_role`` (``focal``/``match``),
        ``distance`` (0 for the focal unit) and ``source_row`` (row position
        in the analysed frame) to the original columns.
        """
        pairs = self._pairs
        heads = pairs.drop_duplicates("match_id")
        focal_part = self._source.iloc[heads["focal_row"].values].assign(
            match_id=heads["match_id"].values,
            matched_role="focal",
            distance=0.0,
            source_row=heads["focal_row"].values,
        )
        match_part = self._source.iloc[pairs["match_row"].values].assign(
            match_id=pairs["match_id"].values,
            matched_role="match",
            distance=pairs["distance"].values,
            source_row=pairs["match_row"].values,
        )
        out = pd.concat([focal_part, match_part], ignore_index=True)
        return out.sort_values(["match_id", "matched_role"], kind="stable").reset_index(drop=True)

    @property
    def weights(self) -> np.ndarray:
        """
        Matching weight per row of the analysed frame; 0 for unmatched units.

        Within one pass a matched focal unit weighs 1 and a matched pool unit
        weighs the sum of 1/k over the groups of size k it joins, rescaled so
        the pool weights sum to the number of distinct pool units used. ATT
        and ATC have a single pass, so focal weights are exactly 1. ATE sums
        the weights of its two passes: a unit weighs 1 for its own group plus
        its pool weight from the opposite pass.
        """
        return self._weights.copy()

    @property
    def n_groups(self) -> int:
        """Number of match groups (matched focal units)."""
        return int(self._pairs["match_id"].nunique())

    @property
    def n_focal_unmatched(self) -> int:
        """Focal units dropped because no acceptable match was found."""
        return self._n_focal_unmatched

    @property
    def n_unique_matches(self) -> int:
        """Distinct units drawn from the pool."""
        return int(self._pairs["match_row"].nunique())

    @property
    def caliper_width(self) -> float | None:
        """Caliper on the matching-score scale, or ``None``."""
        return self._caliper_width

    @property
    def scores(self) -> np.ndarray:
        """Matching score per row of the analysed frame, on the ``spec.distance`` scale."""
        return self._scores.copy()

    def mean_difference(self, outcome: str) -> float:
        """Weighted mean outcome of treated minus controls in the matched sample."""
        if outcome not in self._source.columns:
            raise ValueError(f"Outcome column '{outcome}' not found in dataframe.")
        y = self._source[outcome].values.astype(float)
        T = self._source[self._treatment].values.astype(int)
        w = self._weights
        t, c = (T == 1) & (w > 0), (T == 0) & (w > 0)
        return float(np.average(y[t], weights=w[t]) - np.average(y[c], weights=w[c]))

    def summary(self) -> str:
        T = self._source[self._treatment].values.astype(int)
        w = self._weights
        lines = [
            "",
            f"Matched sample: {self._spec.name}",
            f"  {self._spec.describe()}",
            "─" * 54,
            f"  {'':<24}{'Control':>12}{'Treated':>12}",
            f"  {'All':<24}{int((T == 0).sum()):>12}{int((T == 1).sum()):>12}",
            f"  {'Matched':<24}{int(((T == 0) & (w > 0)).sum()):>12}{int(((T == 1) & (w > 0)).sum()):>12}",
            f"  {'Unmatched':<24}{int(((T == 0) & (w == 0)).sum()):>12}{int(((T == 1) & (w == 0)).sum()):>12}",
            "",
            f"  Match groups         : {self.n_groups}",
            f"  Focal units dropped  : {self.n_focal_unmatched}",
        ]
        if self._caliper_width is not None:
            lines.append(f"  Caliper width        : {self._caliper_width:.4f}  ({self._spec.distance} scale)")
        lines.append("")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return self.summary()


# ── Matcher ────────────────────────────────────────────────────────────────────

class NearestNeighborMatcher:
    """
    Greedy nearest-neighbour matching on a propensity score.

    For ATT the treated units are focal and each is matched to up to
    ``spec.ratio`` controls; ATC reverses the roles; ATE runs both passes and
    concatenates their groups.

    Without replacement matching proceeds in ``ratio`` rounds. Each round
    visits the focal units in ``spec.order`` and gives each one its nearest
    still-available pool unit; a focal unit that found no match in an earlier
    round is not revisited. With replacement every focal unit simply takes
    its ``ratio`` nearest pool units.

    Example::

        ps = PropensityModel(DEFAULT_COVARIATES).fit(cohort)
        matched = NearestNeighborMatcher(MatchSpec("1:1")).match(
            cohort, "treated", ps.scores
        )
        print(matched.summary())
    """

    def __init__(self, spec: MatchSpec, seed: int = _ORDER_SEED) -> None:
        self._spec = spec
        self._seed = seed

    def _visit_order(self, focal: np.ndarray) -> np.ndarray:
        order = self._spec.order
        if order == "largest":
            return np.argsort(-focal, kind="stable")
        if order == "smallest":
            return np.argsort(focal, kind="stable")
        if order == "random":
            return np.random.default_rng(self._seed).permutation(len(focal))
        return np.arange(len(focal))

    def _greedy(
        self,
        focal: np.ndarray,
        pool: np.ndarray,
        caliper_width: float | None,
    ) -> list[list[tuple[int, float]]]:
        available = np.ones(len(pool), dtype=bool)
        matches: list[list[tuple[int, float]]] = [[] for _ in range(len(focal))]
        order = self._visit_order(focal)

        for round_ in range(self._spec.ratio):
            for i in order:
                if len(matches[i]) < round_:
                    continue
                candidates = np.flatnonzero(available)
                if candidates.size == 0:
                    break
                dists = np.abs(pool[candidates] - focal[i])
                best = int(np.argmin(dists))
                if caliper_width is not None and dists[best] > caliper_width:
                    continue
                matches[i].append((int(candidates[best]), float(dists[best])))
                available[candidates[best]] = False
            logger.debug(
                "Round %d: %d focal units hold %d matches, %d pool units left",
                round_ + 1, sum(1 for m in matches if m), sum(len(m) for m in matches),
                int(available.sum()),
            )
        return matches

    def _with_replacement(
        self,
        focal: np.ndarray,
        pool: np.ndarray,
        caliper_width: float | None,
    ) -> list[list[tuple[int, float]]]:
        k = min(self._spec.ratio, len(pool))
        nn = NearestNeighbors(n_neighbors=k, algorithm="brute").fit(pool.reshape(-1, 1))
        dists, idx = nn.kneighbors(focal.reshape(-1, 1))

        matches = []
        for d_row, i_row in zip(dists, idx):
            matches.append([
                (int(j), float(d)) for d, j in zip(d_row, i_row)
                if caliper_width is None or d <= caliper_width
            ])
        return matches

    def match(
        self,
        data: pd.DataFrame,
        treatment: str,
        scores: pd.Series | np.ndarray,
    ) -> MatchedSample:
        """
        Match on ``scores`` (propensity scores, one per row of ``data``).

        Raises
        ------
        ``ValueError``
            If the treatment is not binary with both classes present, or the
            scores are misaligned or not strictly between 0 and 1.
        ``MatchingError``
            If no focal unit could be matched.
        """
        spec = self._spec
        _check_treatment(data, treatment)

        ps = np.asarray(scores, dtype=float)
        if ps.shape != (len(data),):
            raise ValueError(
                f"Expected one propensity score per row ({len(data)}), got shape {ps.shape}."
            )
        if not ((ps > 0) & (ps < 1)).all():
            raise ValueError("Propensity scores must lie strictly between 0 and 1.")

        score = _logit(ps) if spec.distance == "logit" else ps
        caliper_width = spec.caliper * float(np.std(score, ddof=1)) if spec.caliper else None
        T = data[treatment].values.astype(int)

        passes = {"ATT": [(1, 0)], "ATC": [(0, 1)], "ATE": [(1, 0), (0, 1)]}[spec.estimand]
        rows: list[tuple[int, int, int, float]] = []
        n_unmatched = 0
        group = 0
        for focal_arm, pool_arm in passes:
            focal_pos = np.flatnonzero(T == focal_arm)
            pool_pos  = np.flatnonzero(T == pool_arm)
            if spec.replace:
                found = self._with_replacement(score[focal_pos], score[pool_pos], caliper_width)
            else:
                found = self._greedy(score[focal_pos], score[pool_pos], caliper_width)

            for f_local, members in enumerate(found):
                if not members:
                    n_unmatched += 1
                    continue
                for p_local, dist in members:
                    rows.append((int(focal_pos[f_local]), int(pool_pos[p_local]), group, dist))
                group += 1

        if not rows:
            raise MatchingError(
                f"Matching '{spec.name}' found no acceptable match for any focal unit. "
                f"Consider widening the caliper (currently {spec.caliper})."
            )

        pairs = pd.DataFrame(rows, columns=["focal_row", "match_row", "match_id", "distance"])
        matched = MatchedSample(spec, data, treatment, pairs, n_unmatched, caliper_width, score)
        logger.info(
            "Matching '%s': %d groups, %d unique matches, %d focal units dropped",
            spec.name, matched.n_groups, matched.n_unique_matches, n_unmatched,
        )
        return matched
