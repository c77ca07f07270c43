"""Configuration constants for constituency-level MRP estimation."""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Column names
# ---------------------------------------------------------------------------

AREA_COL = "area_code"
RESPONDENT_COL = "respondent_id"
OUTCOME_COL = "vote_target"
TURNOUT_COL = "turnout"
VOTE_COL = "vote"
WEIGHT_COL = "weight"
ELECTORATE_COL = "electorate"

# Observed vote shares live in columns "share_<party>", in percent
SHARE_PREFIX = "share_"

# ---------------------------------------------------------------------------
# Individual-level categorical covariates: (name, levels, reference level)
# ---------------------------------------------------------------------------

SEX_LEVELS: list[str] = ["Male", "Female"]
AGE_LEVELS: list[str] = [
    "16-19",
    "20-24",
    "25-29",
    "30-44",
    "45-59",
    "60-64",
    "65-74",
    "75+",
]
HOUSING_LEVELS: list[str] = ["Owns", "Rents"]
SOCIAL_GRADE_LEVELS: list[str] = ["AB", "C1", "C2", "DE"]
EDUCATION_LEVELS: list[str] = [
    "Level 1",
    "Level 2",
    "Level 3",
    "Level 4/5",
    "No qualifications",
]

CATEGORICAL_COVARIATES: list[tuple[str, list[str], str]] = [
    ("sex", SEX_LEVELS, "Female"),
    ("age", AGE_LEVELS, "45-59"),
    ("housing", HOUSING_LEVELS, "Owns"),
    ("social_grade", SOCIAL_GRADE_LEVELS, "AB"),
    ("education", EDUCATION_LEVELS, "Level 4/5"),
]

# ---------------------------------------------------------------------------
# Sampler defaults
# ---------------------------------------------------------------------------

DEFAULT_DRAWS = 1000
DEFAULT_TUNE = 1000
DEFAULT_CHAINS = 4
DEFAULT_TARGET_ACCEPT = 0.95
DEFAULT_RANDOM_SEED = 42

# Parameters retained from the sampler
BASE_PARAMS: list[str] = ["alpha", "beta", "eta", "tau"]
EXTENDED_PARAMS: list[str] = BASE_PARAMS + ["gamma"]

# Potential-scale-reduction bar; draws at or above it are not converged
R_HAT_THRESHOLD = 1.1
ESS_THRESHOLD = 400.0

# ---------------------------------------------------------------------------
# Post-stratification and validation
# ---------------------------------------------------------------------------

DEFAULT_N_SAMPLES = 50
DEFAULT_INTERVAL = 0.9

# Relative tolerance on observed vote shares summing to 100
SHARE_SUM_RTOL = 1e-5
