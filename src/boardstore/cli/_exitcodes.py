"""Process exit codes for the boardstore CLI."""

SUCCESS = 0
GENERAL_ERROR = 1
USAGE_ERROR = 2
DATABASE_ERROR = 3
SCHEMA_MISMATCH = 4
EXECUTION_FAILURE = 5
NOT_FOUND = 6
ACCESS_DENIED = 7
LOCK_TIMEOUT = 8
# Export finished but the scan budget ran out; the output file holds a prefix.
PARTIAL_RESULT = 9
