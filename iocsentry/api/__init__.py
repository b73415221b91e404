"""
IOCSentry HTTP API
"""
