"""MPI patient identity merge service."""
