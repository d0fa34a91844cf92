"""
SeqForge Setup Script
======================
Installs SeqForge as a local editable package so that all internal
imports (e.g. `from seqforge.model.factory import build_model`) work
from any script or notebook.

Usage:
    cd /path/to/seqforge
    pip install -e .[dev]
"""

from setuptools import setup, find_packages

setup(
    name="seqforge",
    version="0.1.0",
    description=(
        "SeqForge: model-type descriptors to trainable encoder-decoder, "
        "BERT and multi-task sequence models in PyTorch"
    ),
    long_description=open("README.md", encoding="utf-8").read(),
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        "torch>=2.1.0",
        "numpy>=1.24.0",
        "pyyaml>=6.0",
    ],
    extras_require={
        "dev": ["pytest>=7.0"],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Science/Research",
        "Programming Language :: Python :: 3",
        "Topic :: Scientific/Engineering :: Artificial Intelligence",
    ],
)
