"""Settlement core: webhook verification, idempotent settlement and event fan-out."""
