"""Setup script for boot-integrity."""

from pathlib import Path

from setuptools import find_packages, setup

# Read the version from __version__.py
version_dict = {}
with open("boot_integrity/__version__.py") as f:
    exec(f.read(), version_dict)

VERSION = version_dict["__version__"]

# Read the long description from README
README = Path("README.md").read_text(encoding="utf-8")

setup(
    name="boot-integrity",
    version=VERSION,
    description="Android boot image patching, stock backup and partition integrity toolkit",
    long_description=README,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.9",
    install_requires=[
        "loguru>=0.7.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-cov>=4.0.0",
            "pytest-mock>=3.10.0",
            "ruff>=0.1.0",
            "black>=23.0.0",
            "isort>=5.12.0",
            "mypy>=1.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "boot-integrity=boot_integrity.main:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Topic :: System :: Recovery Tools",
        "Topic :: Utilities",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Operating System :: POSIX :: Linux",
        "Operating System :: MacOS",
    ],
    keywords="android boot-image magisk avb vbmeta partition integrity backup",
)
