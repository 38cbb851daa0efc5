"""Client side of the local-first dataset: local store, schema guard, sync client, app store."""
