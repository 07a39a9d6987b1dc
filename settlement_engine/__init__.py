"""Mining-pool settlement and attribution engine."""
