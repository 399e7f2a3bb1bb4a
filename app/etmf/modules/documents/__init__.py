"""TMF documents: lifecycle, versions, approvals, comments and tags."""
