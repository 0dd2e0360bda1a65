"""Client-side build flow: connection retries, reply waiting, stream reading."""
