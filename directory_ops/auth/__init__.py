"""Administrator authorization and the audit trail."""
