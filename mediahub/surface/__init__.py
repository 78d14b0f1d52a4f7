"""Control surfaces: the reconciling session mirror, coordinator clients and the mediahub-ctl CLI."""
