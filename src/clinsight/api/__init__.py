"""Clinsight HTTP API."""
