"""Electronic signatures over documents."""
