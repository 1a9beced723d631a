"""Mission Control backend: lifecycle phases kept in sync with plan files."""
