"""
Analyzer interfaces consumed by the Quality Gate.

The analyzers themselves (requirements mapper, linter, coverage scanner) live
outside the kernel. The gate only depends on these protocols and the report
shapes in delivery_kernel.models.review.
"""

from typing import Callable, Optional, Protocol

from delivery_kernel.models.review import CoverageReport, QualityReport, RequirementsReport


class RequirementsAnalyzer(Protocol):
    def analyze(self, project_id: str, milestone: str) -> RequirementsReport: ...


class QualityAnalyzer(Protocol):
    def analyze(self, project_id: str, milestone: str) -> QualityReport: ...


class CoverageAnalyzer(Protocol):
    def analyze(self, project_id: str, milestone: str) -> CoverageReport: ...


class StaticAnalyzer:
    """Returns a report produced ahead of time (e.g. by a CI job)."""

    def __init__(self, report):
        self.report = report

    def analyze(self, project_id: str, milestone: str):
        return self.report


class CallableAnalyzer:
    """Adapts a plain function `(project_id, milestone) -> report` to the analyzer protocol."""

    def __init__(self, fn: Callable[[str, str], object], name: Optional[str] = None):
        self.fn = fn
        self.name = name or getattr(fn, "__name__", "analyzer")

    def analyze(self, project_id: str, milestone: str):
        return self.fn(project_id, milestone)


class UnavailableAnalyzer:
    """Stands in for an analyzer that is not installed; every call fails."""

    def __init__(self, reason: str = "analyzer not configured"):
        self.reason = reason

    def analyze(self, project_id: str, milestone: str):
        raise RuntimeError(self.reason)
