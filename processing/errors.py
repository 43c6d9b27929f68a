"""
Error kinds raised by the ACS / PLACES mapping pipeline.

Fetch and catalog errors are fatal to the calling step and carry the offending
parameters. Per-row data problems (zero denominators, unmatched units) are
never raised: they show up as missing values.
"""

from typing import List, Optional, Sequence


class PipelineError(Exception):
    """Base class for all pipeline failures."""


class CatalogUnavailable(PipelineError):
    """The Census variable catalog could not be retrieved."""

    def __init__(self, year: int, dataset: str, reason: str):
        self.year = year
        self.dataset = dataset
        self.reason = reason
        super().__init__(f"Variable catalog unavailable for {year} {dataset}: {reason}")


class CensusRequestError(PipelineError):
    """A Census data request failed."""

    def __init__(
        self,
        message: str,
        year: Optional[int] = None,
        dataset: Optional[str] = None,
        state: Optional[str] = None,
    ):
        self.year = year
        self.dataset = dataset
        self.state = state
        context = ", ".join(
            f"{key}={value}"
            for key, value in (("year", year), ("dataset", dataset), ("state", state))
            if value is not None
        )
        super().__init__(f"{message} ({context})" if context else message)


class UnknownVariableCode(CensusRequestError):
    """The Census API rejected a requested variable code."""

    def __init__(
        self,
        code: str,
        year: Optional[int] = None,
        dataset: Optional[str] = None,
        state: Optional[str] = None,
    ):
        self.code = code
        super().__init__(f"Unknown variable code '{code}'", year, dataset, state)


class KeyTypeMismatch(PipelineError):
    """A join matched zero units, which points at a key normalization bug."""

    def __init__(self, on: str, base_examples: Sequence, external_examples: Sequence):
        self.on = on
        self.base_examples: List = list(base_examples)
        self.external_examples: List = list(external_examples)
        super().__init__(
            f"Join on '{on}' matched no rows. "
            f"Base keys look like {self.base_examples!r}, "
            f"external keys look like {self.external_examples!r}"
        )


class RenderError(PipelineError):
    """A map could not be rendered from the given data."""


class EmptyMetricSelection(RenderError):
    """No metric was selected for rendering."""


class NoDataToRender(RenderError):
    """Every selected value is missing."""
