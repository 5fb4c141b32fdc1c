"""
Setup script for lexprep.

lexprep is the study engine behind a bar-exam tutor. It serves three roles:

1. Mastery Tracking - Per-skill knowledge state updated from practice attempts
2. Study Planning - Daily sessions and their study assets, built by background jobs
3. Grounded Generation - Study material sourced only from verified legal authorities

The 'lexprep' command runs the worker, the planner trigger and the admin job tools.
"""

from setuptools import find_packages, setup

setup(
    name="lexprep",
    version="0.3.0",
    description="Grounded study engine: mastery tracking, session planning and a durable job queue",
    long_description=open("README.md", encoding="utf-8").read() if __import__("os").path.exists("README.md") else "",
    long_description_content_type="text/markdown",
    author="lexprep",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.11",
    install_requires=[
        # CLI
        "typer>=0.9.0",
        "rich>=13.0.0",
        # API
        "fastapi>=0.110.0",
        "uvicorn>=0.27.0",
        # Database
        "sqlalchemy[asyncio]>=2.0.0",
        "asyncpg>=0.29.0",
        # Config & Validation
        "pydantic>=2.0.0",
        "pydantic-settings>=2.0.0",
        # HTTP
        "httpx>=0.25.0",
        # Logging
        "loguru>=0.7.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.23.0",
            "pytest-cov>=4.0.0",
            "aiosqlite>=0.19.0",
        ],
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.23.0",
            "pytest-cov>=4.0.0",
            "aiosqlite>=0.19.0",
            "ruff>=0.1.0",
            "mypy>=1.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "lexprep=lexprep.cli.main:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: Console",
        "Intended Audience :: Education",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Education",
        "Topic :: Education :: Computer Aided Instruction (CAI)",
    ],
    keywords="learning mastery bar-exam grounding job-queue education",
)
