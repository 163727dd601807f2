"""
Constants
Centralised storage for pipeline statuses, sampling and retry defaults.
"""
PROVIDER_GITLAB = "GitLab"

# Pipeline statuses (normalised to lower case)
STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
STATUS_RUNNING = "running"
STATUS_CANCELED = "canceled"
TERMINAL_STATUSES = frozenset({STATUS_SUCCESS, STATUS_FAILED})

# Job statuses that matter for reliability analysis
JOB_SUCCESS = "success"
JOB_FAILED = "failed"

PERCENTILES = (50, 95, 99)

DEFAULT_LIMIT = 500
DEFAULT_MIN_TYPE_PERCENTAGE = 1.0
DEFAULT_MAX_CONCURRENCY = 500
DEFAULT_MAX_RETRIES = 30
DEFAULT_RETRY_DELAY = 10.0
GRAPHQL_PAGE_SIZE = 50

USER_AGENT = "CILens/0.1.0"
