"""Setup configuration for staged-load-foundry package."""

from setuptools import setup, find_packages
from pathlib import Path

# Read the README file
readme_file = Path(__file__).parent / "README.md"
long_description = (
    readme_file.read_text(encoding="utf-8") if readme_file.exists() else ""
)

setup(
    name="staged-load-foundry",
    version="0.1.0",
    description="Watermark-based staged incremental loads with cutoff and lineage tracking on DuckDB",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    package_data={"staged_load": ["examples/*.yaml", "examples/data/*.csv"]},
    include_package_data=True,
    python_requires=">=3.9",
    install_requires=[
        "ibis-framework[duckdb]>=9.0.0",
        "duckdb>=1.0.0",
        "pandas>=1.5.0",
        "pyarrow>=10.0.0",
        "python-dotenv>=1.0.0",  # For .env loading
        "pyyaml>=6.0",
        "tenacity>=8.0.0",  # For retry logic
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-cov>=4.0.0",
            "black>=22.0.0",
            "flake8>=5.0.0",
            "mypy>=0.990",
        ],
    },
    entry_points={
        "console_scripts": [
            "staged-load=staged_load.__main__:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Topic :: Database",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3.13",
    ],
    keywords="data-engineering incremental-load watermark lineage merge upsert duckdb ibis",
)
