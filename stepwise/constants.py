DEFAULT_POLL_PERIOD_SECONDS = 60
DEFAULT_BATCH_SIZE = 100
DEFAULT_LEASE_TIMEOUT_SECONDS = 300
DEFAULT_DISPATCH_TIMEOUT_SECONDS = 30.0
DEFAULT_BACKOFF_BASE_MINUTES = 1.0
DEFAULT_BACKOFF_CEILING_MINUTES = 180.0
DEFAULT_MAX_RETRIES = 5
DEFAULT_RETENTION_DAYS = 30
DEFAULT_SIGNING_TTL_SECONDS = 300
