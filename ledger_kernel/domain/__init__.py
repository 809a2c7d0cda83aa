"""Pure domain layer: no database, no I/O beyond the system clock."""
