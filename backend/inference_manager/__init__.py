"""Provision model servers on a SLURM cluster and reach them through SSH tunnels."""

__version__ = "0.1.0"
