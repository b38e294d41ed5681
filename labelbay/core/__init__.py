# Core infrastructure: config, database, errors, locks, retry
