"""
MTF Sentinel Trader - HTTP API
"""
