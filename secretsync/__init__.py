"""
secretsync: mirrors credentials from external secret backends into a local
key-value secret store on a schedule.
"""

__version__ = "0.1.0"
