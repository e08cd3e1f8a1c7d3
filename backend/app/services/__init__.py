"""Domain services: waitlist (tokens, slots, entries), availability probes, notifiers."""
