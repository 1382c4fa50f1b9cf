"""Application package for fleetguard."""
