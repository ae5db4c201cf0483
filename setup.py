#!/usr/bin/env python3
"""
Setup script for blobcopy

Installation:
    pip install .
    pip install -e .[dev]  # Development mode

Distribution:
    python setup.py sdist bdist_wheel
"""

from setuptools import setup
import re

# Read version from blobcopy.py
with open('blobcopy.py', 'r', encoding='utf-8') as f:
    content = f.read()
    version_match = re.search(r'^__version__\s*=\s*[\'"]([^\'"]*)[\'"]', content, re.MULTILINE)
    if version_match:
        version = version_match.group(1)
    else:
        raise RuntimeError("Unable to find version string in blobcopy.py")

# Read long description from README
with open('README.md', 'r', encoding='utf-8') as f:
    long_description = f.read()

setup(
    name='blobcopy',
    version=version,
    description='Streaming copy of container image blobs - digest verification, on-the-fly compression changes, layer encryption hooks and diff ID computation in a single pass.',
    long_description=long_description,
    long_description_content_type='text/markdown',
    author='blobcopy contributors',
    py_modules=['blobcopy', 'blob_layout'],
    python_requires='>=3.8',
    install_requires=[
        'lz4>=4.0.0',
        'zstandard>=0.20.0',
    ],
    extras_require={
        'dev': [
            'pytest>=7.0.0',
            'pytest-cov>=4.0.0',
            'mypy>=1.0.0',
            'black>=23.0.0',
            'flake8>=6.0.0',
            'isort>=5.12.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'blobcopy=blobcopy:main',
        ],
    },
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: Developers',
        'Intended Audience :: System Administrators',
        'License :: OSI Approved :: GNU General Public License v3 or later (GPLv3+)',
        'Operating System :: OS Independent',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.8',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Topic :: Software Development :: Libraries :: Python Modules',
        'Topic :: System :: Archiving :: Compression',
        'Topic :: System :: Software Distribution',
        'Topic :: Utilities',
    ],
    keywords='oci container image blob layer digest compression zstd gzip',
    license='GPL-3.0-or-later',
    platforms=['any'],
    zip_safe=False,
)
