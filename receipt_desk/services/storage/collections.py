"""Collection names shared by every document store backend."""

USERS = "users"
WHITELIST = "whitelist"
CATEGORIES = "categories"
RECEIPTS = "receipts"
REVISIONS = "revisions"
AUDIT_EVENTS = "audit_events"
