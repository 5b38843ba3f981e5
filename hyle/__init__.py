"""
hyle - an autonomous agent loop for coding tasks.

Run ``python -m hyle run "<task>"`` in a project directory.
"""

__version__ = "0.1.0"
