"""
Operational tooling for FusionPBX / FreeSWITCH / PostgreSQL running in Docker.

Deploys, backs up, restores and repairs a FusionPBX container. FusionPBX,
FreeSWITCH, PostgreSQL and Docker are driven through their CLIs, the Docker
Engine API and SQL; nothing here reimplements them.
"""

__version__ = "0.4.0"
