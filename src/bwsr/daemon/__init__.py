"""Background watchdog daemon: server, process manager and client."""
