"""Setup configuration for request-dispatcher."""

from setuptools import setup, find_packages
from pathlib import Path

# Read the contents of README file
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text()

setup(
    name="request-dispatcher",
    version="1.0.0",
    description="Bounded-concurrency batch request dispatcher with per-batch cooldowns",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.11",
    install_requires=[
        # HTTP transport
        "requests>=2.31.0",
        # Configuration & Data Formats
        "PyYAML>=6.0",
        "python-dotenv>=1.0.0",
        # Data Validation
        "pydantic>=2.0.0",
        # Logging & Monitoring
        "colorlog>=6.7.0",
        "tqdm>=4.65.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-cov>=4.1.0",
            "pytest-timeout>=2.1.0",
            "black>=23.0.0",
            "flake8>=6.0.0",
            "mypy>=1.5.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "request-dispatcher=request_dispatcher.pipeline.runner:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Topic :: Software Development :: Libraries :: Python Modules",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3.13",
    ],
    keywords="http dispatcher concurrency rate-limit asyncio batch",
)
