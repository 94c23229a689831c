"""HTTP service: plan, apply, outputs and the registry push webhook."""
