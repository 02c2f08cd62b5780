"""
computetest Package Setup

Install with: pip install -e .
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read the README
readme_path = Path(__file__).parent / "README.md"
long_description = ""
if readme_path.exists():
    long_description = readme_path.read_text(encoding='utf-8')

setup(
    name="computetest",
    version="0.1.0",
    author="computetest Team",
    description="Unit tests with assertions inside GPU compute kernels",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    package_data={
        'computetest': [
            'runtime/*.slang',
        ],
    },
    include_package_data=True,
    python_requires=">=3.10",
    install_requires=[
        "numpy>=1.20.0",
        "pytest>=8.4",
    ],
    extras_require={
        "gpu": [
            "slangpy>=0.1.0",
        ],
        "dev": [
            "pytest>=8.4",
            "pytest-cov>=2.0",
            "black>=22.0",
            "mypy>=0.900",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Framework :: Pytest",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: Software Development :: Testing",
    ],
    keywords="testing, gpu, compute, shader, slang, pytest",
    entry_points={
        "pytest11": [
            "computetest = computetest.plugin",
        ],
    },
)
