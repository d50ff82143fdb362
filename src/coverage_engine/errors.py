"""
Coverage engine exceptions
"""


class CoverageAnalysisError(Exception):
    """Base class for coverage engine failures"""


class CoverageTimeoutError(CoverageAnalysisError):
    """The wall-clock budget of a coverage run was exceeded"""

    def __init__(self, stage: str, elapsed_sec: float, budget_sec: float):
        super().__init__(
            f"Coverage calculation exceeded {budget_sec:.0f}s budget during {stage} "
            f"(elapsed {elapsed_sec:.1f}s)"
        )
        self.stage = stage
        self.elapsed_sec = elapsed_sec
        self.budget_sec = budget_sec
