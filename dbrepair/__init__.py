"""
dbrepair: inspect and repair records in a relational store from the command line.
"""

__version__ = "1.0.0"
