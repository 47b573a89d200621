"""Subscription registry and the consent / unsubscribe state machine."""
