"""
Print Bridge
============

Remote receipt printing through bridge devices attached to thermal printers.

Clients submit print jobs to the dispatcher, which records them in the job
ledger and announces them over the realtime channel. Bridge runtimes pick the
jobs up, print them one at a time and report the outcome back.
"""

__version__ = '1.0.0'
