"""Probe scheduling, execution, incident tracking and the notification outbox."""
