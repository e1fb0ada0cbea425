"""Settlement core: audit, abuse tracking, intents, verification and settlement."""
