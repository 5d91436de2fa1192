# -*- coding: utf-8 -*-
from setuptools import setup, find_packages
import sys
if sys.version_info < (3, 8):
    sys.exit('Sorry, Python < 3.8 is not supported.')

with open('./requirements.txt') as f:
    INSTALL_REQUIRES = f.read().splitlines()

with open('./requirements-dev.txt') as f:
    TESTS_REQUIRE = f.read().splitlines()


setup(
    name="mirror-images",
    author="mirror maintainers",
    use_scm_version={
        'write_to': 'mirrorlib/_version.py',
        'fallback_version': '0.0.0',
    },
    setup_requires=['setuptools_scm'],
    description="CLI tool keeping multi-arch mirrors of upstream application images up to date",
    long_description=open('README.md').read(),
    long_description_content_type='text/markdown',
    license="Apache License, Version 2.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    include_package_data=True,
    entry_points={
        'console_scripts': [
            'mirror = mirrorlib.cli.__main__:main'
        ]
    },
    install_requires=INSTALL_REQUIRES,
    extras_require={
        'tests': TESTS_REQUIRE,
    },
    test_suite='tests',
    dependency_links=[],
    python_requires='>=3.8',
    classifiers=[
        "Development Status :: 4 - Beta",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Environment :: Console",
        "Operating System :: POSIX",
        "License :: OSI Approved :: Apache Software License",
        "Intended Audience :: Developers",
        "Topic :: Software Development :: Build Tools",
        "Natural Language :: English",
    ]
)
