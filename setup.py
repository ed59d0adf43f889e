#!/usr/bin/env python3
"""
Jolokia Agent Manager - Setup Script
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read the README file
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text()

# Read requirements
requirements = []
with open(this_directory / "requirements.txt") as f:
    for line in f:
        line = line.strip()
        if line and not line.startswith("#"):
            requirements.append(line)

setup(
    name="jolokia-agent-manager",
    version="1.0.0",
    author="Jolokia Agent Manager Team",
    author_email="jolokia-agent-manager@example.org",
    description="Download, inspect and repack Jolokia JMX-over-HTTP agents",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://github.com/jolokia/jolokia-agent-manager",

    packages=find_packages(exclude=["tests", "tests.*"]),

    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: System Administrators",
        "Intended Audience :: Developers",
        "Topic :: System :: Monitoring",
        "Topic :: System :: Systems Administration",
        "License :: OSI Approved :: Apache Software License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Operating System :: OS Independent",
    ],

    python_requires=">=3.8",
    install_requires=requirements,

    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-mock>=3.11.0",
            "pytest-cov>=4.1.0",
            "requests-mock>=1.11.0",
            "flake8>=6.0.0",
            "black>=23.0.0",
            "mypy>=1.4.0",
        ],
    },

    entry_points={
        "console_scripts": [
            "jolokia-agent=jolokia_agent_manager.main:cli_main",
        ],
    },

    package_data={
        "jolokia_agent_manager": [
            "config/*.yaml",
            "config/*.cfg",
        ],
    },

    include_package_data=True,
    zip_safe=False,

    keywords="jolokia jmx agent maven download repack",

    project_urls={
        "Bug Reports": "https://github.com/jolokia/jolokia-agent-manager/issues",
        "Source": "https://github.com/jolokia/jolokia-agent-manager",
    },
)
