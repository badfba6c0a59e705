"""Services: decoders, replay, encryption, key resolution and content access."""
