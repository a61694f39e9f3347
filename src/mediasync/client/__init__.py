"""Client side of mediasync: transport, settings, credentials, engine and CLI."""
