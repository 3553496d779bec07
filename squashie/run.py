#!/usr/bin/env python3
"""
Quick runner for Squashie Conflict Service
==========================================

Usage:
    python -m squashie.run
"""

import uvicorn

if __name__ == "__main__":
    print("Starting Squashie Conflict Service...")
    print("API docs: http://localhost:8000/docs")
    print("Health:   http://localhost:8000/health")
    print()

    uvicorn.run(
        "squashie.api:app",
        host="0.0.0.0",
        port=8000,
        reload=True
    )
