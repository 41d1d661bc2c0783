"""
stratum - Layered storage provisioning for automated Linux installation

This package turns a declarative storage scheme into a mounted target root,
composing partitioning, software RAID, LUKS encryption and LVM, and hands the
resulting device identities to boot-configuration generation.
"""

__version__ = "0.1.0"
