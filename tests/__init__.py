# possale test suite
#
# - Service tests: sale creation, voids, failure and retry paths
# - Ledger and pricing unit tests
# - Concurrency tests against a file-backed SQLite database
# - CLI tests through Flask's click runner
#
# Run with: pytest
