"""
Setup configuration for cronrunner package.
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read the README file
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text() if (this_directory / "README.md").exists() else ""

setup(
    name="cronrunner",
    version="0.1.0",
    description="Run a command on a cron schedule and wait for running jobs before exiting",
    long_description=long_description,
    long_description_content_type="text/markdown",

    # Package discovery
    packages=find_packages(include=["cronrunner", "cronrunner.*"]),

    # Dependencies
    install_requires=[
        "APScheduler>=3.10,<4",
        "python-dotenv>=1.0.0",
        "structlog>=22.1.0",
    ],

    # Optional dependencies
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "black>=23.0.0",
            "flake8>=6.0.0",
        ],
    },

    # Python version requirement
    python_requires=">=3.8",

    # CLI entry points
    entry_points={
        "console_scripts": [
            "cronrunner=cronrunner.cli:main",
        ],
    },

    # Classification
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: System Administrators",
        "Topic :: System :: Systems Administration",
        "Environment :: Console",
        "Operating System :: POSIX",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],

    # Keywords
    keywords="cron scheduler graceful shutdown container",
)
