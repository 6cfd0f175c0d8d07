"""
Narrative explanation renderer for a completed matching analysis.

``explain_analysis`` takes an ``AnalysisReport`` and returns a formatted
multi-line string; ``AnalysisReport.executive_summary()`` calls it.
"""
from __future__ import annotations

_SEP = "━" * 66


# ── Shared helpers ─────────────────────────────────────────────────────────────

def _fmt_p(p: float) -> str:
    if p < 0.001:
        return "p < 0.001"
    return f"p = {p:.3f}"


def _fmt_ci(lo: float, hi: float) -> str:
    return f"[{lo:.3f}, {hi:.3f}]"


def _list_vars(names: list[str]) -> str:
    if len(names) == 1:
        return names[0]
    return ", ".join(names[:-1]) + f" and {names[-1]}"


def _odds_phrase(result) -> str:
    lo, hi = result.conf_int
    direction = "higher" if result.effect >= 1 else "lower"
    return (
        f"the odds of {result.outcome} were {direction} among exposed patients "
        f"(OR = {result.effect:.3f}, 95% CI: {_fmt_ci(lo, hi)}, {_fmt_p(result.pvalue)})"
    )


def _difference_phrase(result) -> str:
    lo, hi = result.conf_int
    direction = "higher" if result.effect >= 0 else "lower"
    return (
        f"{result.outcome} was {abs(result.effect):.3f} {direction} among exposed patients "
        f"(95% CI: {_fmt_ci(lo, hi)}, {_fmt_p(result.pvalue)})"
    )


# ── Section builders ───────────────────────────────────────────────────────────

def _propensity_section(report) -> str:
    ps = report.propensity
    lo, hi = ps.common_support
    overlap = (
        "Every subject lies inside the common support."
        if ps.n_outside_support == 0 else
        f"{ps.n_outside_support} subjects lie outside the common support "
        f"[{lo:.3f}, {hi:.3f}] and can only be matched poorly."
    )
    return "\n".join([
        "PROPENSITY MODEL",
        f"A logistic regression of {ps.treatment} on {_list_vars(ps.covariates)} gives each "
        f"patient's probability of exposure. The model discriminates with a c-statistic of "
        f"{ps.c_statistic:.3f}. {overlap}",
    ])


def _matching_section(report) -> str:
    lines = [
        "MATCHING AND BALANCE",
        f"Covariate balance is judged by |standardized difference| ≤ {report.balance_threshold} "
        f"(raw difference in proportion for binary covariates).",
        "",
    ]
    for name, variant in report.variants.items():
        m, b = variant.matched, variant.balance
        verdict = (
            "all covariates balanced" if b.balanced else
            f"still imbalanced: {_list_vars(b.imbalanced)}"
        )
        lines.append(
            f"  • {name}: {m.n_groups} match groups, {m.n_focal_unmatched} focal units dropped; "
            f"largest difference {b.max_abs_diff(adjusted=False):.3f} → "
            f"{b.max_abs_diff():.3f}, {verdict}."
        )
    return "\n".join(lines)


def _assumptions_section(assumptions: list) -> str:
    n = len(assumptions)
    n_u = sum(1 for a in assumptions if not a.testable)
    n_t = n - n_u
    intro = (
        f"{n_u} of the {n} assumptions {'is' if n_u == 1 else 'are'} untestable and must be "
        f"argued on clinical grounds; {n_t} can be checked in the data (see the balance tables)."
    )
    lines = ["ASSUMPTIONS", intro, ""]
    for a in assumptions:
        lines.append(f"  {a.fmt_tag()}  {a.name}")
    return "\n".join(lines)


def _results_section(report) -> str:
    binary, continuous = report.binary_outcome, report.continuous_outcome
    lines = ["RESULTS"]
    for name, variant in report.variants.items():
        lines.append(
            f"  • {name}: conditioning on match group, {_odds_phrase(variant.outcomes['conditional_logit'])}; "
            f"{_difference_phrase(variant.outcomes['mixed_linear'])}."
        )
    naive_or = report.unadjusted["logit"]
    naive_md = report.unadjusted["linear"]
    lines += [
        "",
        f"Without matching, the naive odds ratio for {binary} was {naive_or.effect:.3f} and the "
        f"naive difference in {continuous} was {naive_md.effect:.3f}. The gap between the naive "
        f"and matched estimates is the confounding that matching removes.",
    ]
    return "\n".join(lines)


# ── Entry point ────────────────────────────────────────────────────────────────

def explain_analysis(report) -> str:
    from .outcomes import MATCHED_ASSUMPTIONS

    blocks = [
        "\n".join([_SEP, "Executive Summary — Propensity Score Matching",
                   f"  {report.treatment} → {report.binary_outcome}, {report.continuous_outcome}  |  "
                   f"{len(report.variants)} matching variants", _SEP]),

        "\n".join([
            "METHOD",
            f"Exposed and unexposed patients differ systematically at baseline, so a direct "
            f"comparison of outcomes is confounded. Each exposed patient is matched to one or "
            f"more unexposed patients with a similar propensity score, and outcomes are "
            f"compared within the matched sample: conditional logistic regression and a mixed "
            f"logistic model for {report.binary_outcome}, a linear mixed model for "
            f"{report.continuous_outcome}, each with the match group as stratum or random "
            f"intercept.",
        ]),

        _propensity_section(report),
        _matching_section(report),
        _assumptions_section(MATCHED_ASSUMPTIONS),
        _results_section(report),

        "\n".join([
            "CAVEATS",
            "Matching balances only the covariates in the propensity model. Unmeasured "
            "differences between exposed and unexposed patients that affect the outcomes "
            "still bias every estimate above. Matching without replacement depends on the "
            "order in which patients are visited, and caliper matching changes the population "
            "the estimate describes when exposed patients are dropped.",
        ]),

        _SEP,
    ]
    return "\n\n".join(blocks)
