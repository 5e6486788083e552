"""Worker process: leases jobs from the queue and runs the registered handlers."""
