"""
Groundwork - declarative infrastructure provisioning with dependency-ordered apply.
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read README for long description
readme_file = Path(__file__).parent / "README.md"
long_description = readme_file.read_text() if readme_file.exists() else ""

setup(
    name="groundwork",
    version="0.9.0",
    author="Groundwork Contributors",
    description="Declarative infrastructure provisioning with idempotent apply and destroy",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["groundwork", "groundwork.*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Intended Audience :: System Administrators",
        "Topic :: System :: Systems Administration",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.9",
    install_requires=[
        "python-hcl2>=4.3.0,<5",
        "boto3>=1.28.0",
        "typer>=0.9.0",
        "rich>=13.0.0",
        "tenacity>=8.2.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-cov>=4.0.0",
            "black>=22.0.0",
            "mypy>=0.990",
        ],
    },
    entry_points={
        "console_scripts": [
            "groundwork=groundwork.cli:main",
        ],
    },
)
