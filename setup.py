#!/usr/bin/env python3
"""
SegMRI mask codec setup script

Installs the codec packages (``app``, ``Modules``) together with the
top-level ``config`` and ``main`` modules.
"""
from setuptools import setup, find_packages

common_deps = [
    "numpy",
    "pillow",
    "requests",
    "werkzeug",
    "fastapi",
    "uvicorn",
]

test_deps = [
    "pytest",
    "httpx",
]

setup(
    name="segmri-mask-codec",
    version="0.1.0",
    description="RLE mask codec and tar image extractor for cardiac MRI segmentation viewers",
    packages=find_packages(include=["app", "app.*", "Modules", "Modules.*"]),
    py_modules=["config", "main"],
    install_requires=common_deps,
    extras_require={"test": test_deps},
    python_requires=">=3.8",
)
