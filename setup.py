"""Setup script for the Chimera package."""

from setuptools import setup, find_packages

setup(
    name="chimera-orchestrator",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        "pydantic>=2.5",
        "pydantic-settings>=2.1",
        "structlog>=23.2",
        "tenacity>=8.2",
        "prometheus-client>=0.19",
        "httpx>=0.25",
        "langchain-core>=0.1.40",
        "langchain-ollama>=0.1.0",
        "redis>=5.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
        ],
    },
    description="Chimera - orchestration and concurrency engine for multi-model task execution",
    author="Chimera Team",
)
