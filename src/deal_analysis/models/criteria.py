"""
Criterion, WeightedScore and RAGBand models.

A Criterion is one weighted, scored input to a composite assessment. Weights
are relative (they need not sum to 100) and are normalized at aggregation
time over only the criteria that carry a score.

Zero-fabrication: a criterion with no underlying source data carries
score=None. It is never given a guessed default.
"""

from pydantic import BaseModel, ConfigDict, Field


class Criterion(BaseModel):
    """One weighted, scored input to a composite assessment."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description='Criterion name, e.g. "market_attractiveness"')
    weight: int = Field(default=0, ge=0, le=100, description='Relative weight (0-100)')
    score: float | None = Field(
        default=None,
        ge=0,
        le=100,
        description='Score 0-100, or None when no source data exists',
    )
    confidence: float = Field(default=0.0, ge=0, le=100, description='Confidence 0-100')
    aligned: bool = Field(
        default=False, description='Whether the criterion meets the fund alignment bar'
    )

    @property
    def is_scored(self) -> bool:
        """True when the criterion carries a real score."""
        return self.score is not None


class WeightedScore(BaseModel):
    """Output of the weighted scoring calculator."""

    model_config = ConfigDict(frozen=True)

    overall_score: int = Field(default=0, ge=0, le=100)
    total_weight: int = Field(
        default=0, ge=0, description='Sum of weights over scored criteria only'
    )
    scored_count: int = Field(default=0, ge=0)
    total_count: int = Field(default=0, ge=0)
    confidence: int = Field(
        default=0, ge=0, le=100, description='Weight-averaged confidence of scored criteria'
    )
    status: str = Field(
        default='insufficient_data',
        description='"complete", "partial" or "insufficient_data"',
    )


class RAGBand(BaseModel):
    """
    A qualitative band derived from a numeric score.

    Bands are supplied per fund, in descending min_score order.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description='Machine key, e.g. "exciting"')
    label: str = Field(default='', description='Human label, e.g. "Exciting"')
    min_score: int = Field(..., description='Inclusive lower bound of the band')

    @property
    def display_label(self) -> str:
        return self.label or self.name.replace('_', ' ').title()


# Band returned when there is no score to classify
UNKNOWN_BAND = RAGBand(name='unknown', label='Unknown', min_score=-1)
