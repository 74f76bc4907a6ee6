"""
Setup script for the Court Sync Agent
"""
from setuptools import setup

setup(
    name="court-sync",
    version="1.0.0",
    description="Client-side data sync layer for court case management: cache, optimistic mutations, push and polling",
    author="Court Systems",
    python_requires=">=3.10",
    py_modules=[
        "config",
        "errors",
        "storage",
        "session",
        "schemas",
        "auth",
        "api_client",
        "keys",
        "cache",
        "mutations",
        "invalidation",
        "queries",
        "operations",
        "realtime",
        "scheduler",
        "persistence",
        "sync",
        "agent",
    ],
    packages=["commands"],
    install_requires=[
        "httpx>=0.25.0",
        "pydantic>=2.0",
        "python-socketio[asyncio_client]>=5.8",
        "python-dateutil>=2.8.2",
        "click>=8.1.0",
        "rich>=13.0.0",
        "python-dotenv>=1.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.21",
        ],
    },
    entry_points={
        "console_scripts": [
            "courtsync=agent:main",
        ],
    },
)
