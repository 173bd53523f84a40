"""Runner invokers: the boundary that turns a prompt into assistant output."""
