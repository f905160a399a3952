"""HTTP API for permit case builds."""
