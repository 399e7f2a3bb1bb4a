"""Clinical trials, their investigational sites, study team and countries."""
