#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Setup script for CarbonFlow

Life-cycle carbon-flow graph service: graph store, consistency validator,
Sankey layout engine, action processor and event bridge.
"""

from pathlib import Path

from setuptools import find_packages, setup

VERSION = "1.0.0"

readme_file = Path(__file__).parent / "README.md"
if readme_file.exists():
    long_description = readme_file.read_text(encoding="utf-8")
else:
    long_description = "CarbonFlow - Life-cycle carbon-flow graph service"

setup(
    name="carbonflow",
    version=VERSION,
    description="Life-cycle carbon-flow graph service with consistency checks and Sankey layout",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="GreenLang Platform Team",
    python_requires=">=3.9",
    packages=find_packages(include=["carbonflow", "carbonflow.*"]),
    install_requires=[
        "pydantic>=2.0",
        "prometheus-client>=0.17",
        "httpx>=0.24",
        "fastapi>=0.100",
        "typer>=0.9",
        "rich>=13.0",
        "PyYAML>=6.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
        ],
    },
    entry_points={
        "console_scripts": [
            "carbonflow=carbonflow.cli:app",
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "Topic :: Scientific/Engineering",
    ],
)
