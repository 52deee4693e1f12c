"""
Changes module.

- A change is open (new/submitted) or closed (merged/abandoned)
- Revisions are immutable; the change points at its current one
- Approvals cache the change status; every transition refreshes them
- Every transition appends a change message (audit trail)
"""
