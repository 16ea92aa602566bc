# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Setup configuration for criage package manager and repository server
"""

from setuptools import setup, find_packages

setup(
    name="criage",
    version="1.0.0",
    description="Package manager with self-describing archives and a package repository server",
    author="Jason Cafarelli",
    package_dir={"": "src"},
    packages=find_packages("src"),
    python_requires=">=3.9",
    install_requires=[
        "fastapi>=0.104.0",
        "uvicorn>=0.24.0",
        "pydantic>=2.0.0",
        "httpx>=0.25.0",
        "PyYAML>=6.0",
        "python-multipart>=0.0.6",
        "aiofiles>=23.0.0",
        "zstandard>=0.21.0",
        "lz4>=4.0.0",
        "python-gnupg>=0.5.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
        ]
    },
    entry_points={
        "console_scripts": [
            "criage-repository=criage.repository.server:main",
        ]
    },
)
