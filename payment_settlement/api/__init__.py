"""HTTP API for payment settlement."""
