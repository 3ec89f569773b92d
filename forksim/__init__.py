"""
forksim - EVM transaction simulation on disposable Anvil forks
"""

__version__ = "0.1.0"
