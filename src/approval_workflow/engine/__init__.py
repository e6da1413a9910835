"""Engine runtime: configuration, logging, wiring and the command line."""
