from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Assumption:
    """
    A condition the matched comparison relies on for a causal reading.

    ``testable`` says whether the data can speak to it (overlap, balance) or
    whether it has to be argued from clinical knowledge (no unmeasured
    confounding).
    """

    name: str
    testable: bool

    def fmt_tag(self) -> str:
        """Fixed-width bracketed testability label for summary output."""
        return "[  testable  ]" if self.testable else "[ untestable ]"


@dataclass(frozen=True)
class RefutationCheck:
    """
    Outcome of one refutation check.

    ``statistic`` is the quantity compared against ``tolerance`` (both on the
    outcome scale); the check passes when ``abs(statistic) <= tolerance``.
    Both are ``nan`` when the perturbed analysis could not be run.
    """

    name: str
    passed: bool
    detail: str
    statistic: float = float("nan")
    tolerance: float = float("nan")

    def __repr__(self) -> str:
        status = "PASS" if self.passed else "FAIL"
        return f"RefutationCheck({status!r}, {self.name!r})"


class RefutationReport:
    """
    Checks run against one matched estimate.

    Subclasses supply ``_header_lines()``; everything else is shared.
    """

    def __init__(
        self,
        checks: list[RefutationCheck],
        treatment: str,
        outcome: str,
        variant: str,
    ) -> None:
        self._checks = checks
        self._treatment = treatment
        self._outcome = outcome
        self._variant = variant

    def _header_lines(self) -> list[str]:
        raise NotImplementedError

    @property
    def checks(self) -> list[RefutationCheck]:
        """All checks, in the order they were run."""
        return list(self._checks)

    @property
    def passed(self) -> bool:
        return all(c.passed for c in self._checks)

    @property
    def failed_checks(self) -> list[RefutationCheck]:
        return [c for c in self._checks if not c.passed]

    def summary(self) -> str:
        lines = ["", *self._header_lines(), "─" * 60]
        for check in self._checks:
            status = "PASS" if check.passed else "FAIL"
            lines.append(f"  [{status}]  {check.name}")
            lines.append(f"          {check.detail}")
        lines.append("")
        if self.passed:
            lines.append("  All checks passed.")
        else:
            names = ", ".join(c.name for c in self.failed_checks)
            lines.append(f"  Failed: {names}")
        lines.append("")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return self.summary()
