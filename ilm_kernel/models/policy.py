"""Lifecycle Policy — declares when and how to act on a table's segments."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator


class PolicyType(str, Enum):
    COMPRESSION = "COMPRESSION"
    TIERING = "TIERING"
    ARCHIVAL = "ARCHIVAL"
    PURGE = "PURGE"
    CUSTOM = "CUSTOM"


class ActionType(str, Enum):
    COMPRESS = "COMPRESS"
    MOVE = "MOVE"
    READ_ONLY = "READ_ONLY"
    DROP = "DROP"
    TRUNCATE = "TRUNCATE"
    CUSTOM = "CUSTOM"


class Temperature(str, Enum):
    """Coarse freshness classification derived from segment age."""
    HOT = "HOT"
    WARM = "WARM"
    COLD = "COLD"


class PredicateKind(str, Enum):
    """The closed set of predicate kinds the Predicate Resolver understands."""
    DECLARATIVE_QUERY = "declarative-query"   # read-only SELECT, first column truthy
    NAMED_PREDICATE = "named-predicate"       # registered Python callable
    SCRIPTED_BLOCK = "scripted-block"         # registered multi-step block


class PredicateRef(BaseModel):
    """A reference to a predicate resolved at evaluation time."""

    kind: PredicateKind
    code: str


class TargetSelector(BaseModel):
    """Which table's segments a policy applies to."""

    owner: str
    table_name: str

    def matches(self, owner: str, table_name: str) -> bool:
        return (
            self.owner.upper() == owner.upper()
            and self.table_name.upper() == table_name.upper()
        )


class ThresholdProfile(BaseModel):
    """
    Named aging profile used to classify segment temperature.

    A segment younger than hot_threshold_days is HOT, younger than
    warm_threshold_days is WARM, anything older is COLD.
    """

    name: str
    description: str = ""
    hot_threshold_days: int = Field(ge=0)
    warm_threshold_days: int = Field(ge=0)
    cold_threshold_days: int = Field(ge=0)

    @model_validator(mode="after")
    def _check_ordering(self) -> "ThresholdProfile":
        if not (
            self.hot_threshold_days
            < self.warm_threshold_days
            < self.cold_threshold_days
        ):
            raise ValueError(
                f"Threshold profile {self.name}: expected hot < warm < cold, got "
                f"{self.hot_threshold_days}/{self.warm_threshold_days}/"
                f"{self.cold_threshold_days}"
            )
        return self

    def classify(self, age_days: int) -> Temperature:
        if age_days < self.hot_threshold_days:
            return Temperature.HOT
        if age_days < self.warm_threshold_days:
            return Temperature.WARM
        return Temperature.COLD


DEFAULT_THRESHOLD_PROFILE = ThresholdProfile(
    name="DEFAULT",
    description="Standard aging profile",
    hot_threshold_days=90,
    warm_threshold_days=365,
    cold_threshold_days=1095,
)


class Policy(BaseModel):
    """
    A lifecycle rule. Eligibility criteria that are left unset are not checked.

    Priority follows the storage convention: lower numbers are more urgent.
    """

    id: int
    name: str
    target: TargetSelector
    policy_type: PolicyType = PolicyType.COMPRESSION
    priority: int = Field(ge=0, default=100)
    enabled: bool = True

    # Eligibility criteria
    age_days: Optional[int] = Field(ge=0, default=None)
    age_months: Optional[int] = Field(ge=0, default=None)
    size_threshold_mb: Optional[float] = Field(ge=0, default=None)
    access_pattern: Optional[Temperature] = None
    threshold_profile: Optional[str] = None     # falls back to the engine default
    custom_predicate: Optional[PredicateRef] = None

    # Action parameters
    action_type: ActionType
    target_location: Optional[str] = None       # MOVE destination
    compression_type: Optional[str] = None      # e.g. "QUERY HIGH"

    @model_validator(mode="after")
    def _check_action_parameters(self) -> "Policy":
        if self.action_type == ActionType.MOVE and not self.target_location:
            raise ValueError(f"Policy {self.name}: MOVE requires target_location")
        return self
