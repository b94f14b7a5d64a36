"""
Auto-Mode Server
================

FastAPI application exposing the orchestration engine over HTTP.
"""
