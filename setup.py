#!/usr/bin/env python

"""The setup script."""

from setuptools import setup, find_packages

with open('README.rst') as readme_file:
    readme = readme_file.read()

with open('HISTORY.rst') as history_file:
    history = history_file.read()

requirements = [
    "numpy>=1.23",
    "numba>=0.58.0",
    "numba_progress>=1.1.0",
    "tqdm>=4.66",
    "tifffile>=2023.7.10",
]

test_requirements = ['pytest>=7.4', ]

setup(
    author="Timothy Kallady",
    author_email='t.kallady@garvan.org.au',
    python_requires='>=3.8',
    classifiers=[
        'Development Status :: 2 - Pre-Alpha',
        'Intended Audience :: Science/Research',
        'License :: OSI Approved :: MIT License',
        'Natural Language :: English',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.8',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
    ],
    description="Reading and writing of PicoQuant TTTR (.ptu, .pt3) FLIM scans.",
    entry_points={
        'console_scripts': [
            'pqtttr=pqtttr.cli:main',
        ],
    },
    install_requires=requirements,
    extras_require={'test': test_requirements},
    license="MIT license",
    long_description=readme + '\n\n' + history,
    include_package_data=True,
    keywords='pqtttr ptu pt3 flim picoquant',
    name='pqtttr',
    packages=find_packages(include=['pqtttr', 'pqtttr.*']),
    test_suite='tests',
    tests_require=test_requirements,
    url='https://github.com/Garvan-Data-Science-Platform/pqtttr',
    version='0.1.0',
    zip_safe=False,
)
