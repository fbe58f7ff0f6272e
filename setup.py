"""Setup script for the toolweave package."""

from setuptools import setup, find_packages

setup(
    name="toolweave",
    version="0.1.0",
    packages=find_packages(exclude=("tests", "tests.*")),
    python_requires=">=3.10",
    install_requires=[
        "fastapi>=0.110",
        "httpx>=0.27",
        "prometheus-client>=0.20",
        "pydantic>=2.6",
        "pydantic-settings>=2.2",
        "structlog>=24.1",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
        ],
    },
    description="toolweave - health-aware routing and orchestration across heterogeneous tool providers",
    author="toolweave Team",
)
