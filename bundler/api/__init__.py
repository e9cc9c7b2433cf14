"""Remote trade venue adapters."""
