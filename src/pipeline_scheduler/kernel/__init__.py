"""kernel/ — composition root wiring settings, scheduler and control surface."""
