"""HTTP API 层"""
