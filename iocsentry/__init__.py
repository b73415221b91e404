"""
IOCSentry - Threat Indicator Lookup Service

Classifies raw indicators (hashes, IPs, domains, URLs), resolves them
against VirusTotal through a rotating key pool and keeps the verdicts in
a local record store.
"""

__version__ = "0.1.0"
