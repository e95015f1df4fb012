# SPDX-FileCopyrightText: 2025 ngstream contributors
# SPDX-License-Identifier: Apache-2.0

from setuptools import setup, find_packages

setup(
    name='ngstream',
    version='0.1.0',
    description='SPICE deck normalization and continuous result streaming for the ngspice shared library',
    license='Apache-2.0',
    python_requires='>=3.10',
    packages=find_packages(include=['ngstream', 'ngstream.*']),
    install_requires=[
        'numpy',
        'atpublic',
    ],
    extras_require={
        'test': ['pytest'],
    },
    entry_points={
        'console_scripts': [
            'ngstream = ngstream.cli:main',
        ],
    },
)
