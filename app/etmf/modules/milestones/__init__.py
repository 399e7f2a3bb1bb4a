"""Trial and site milestones with derived overdue tracking."""
