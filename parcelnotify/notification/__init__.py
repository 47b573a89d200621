"""Multi-channel notification dispatch.

Renders channel- and locale-specific messages for shipment events,
delivers them through email, SMS, chat-messaging and webhook transports,
and records every (subscription, event) outcome exactly once in the
delivery ledger.
"""
