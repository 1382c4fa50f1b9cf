"""fleetguard: admission control for request-handling worker fleets."""
