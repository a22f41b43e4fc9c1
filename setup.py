#!/usr/bin/env python3
"""
Setup configuration for CloudBridge
"""

from setuptools import setup, find_packages
import os

# Read the contents of README file
this_directory = os.path.abspath(os.path.dirname(__file__))
with open(os.path.join(this_directory, 'README.md'), encoding='utf-8') as f:
    long_description = f.read()

# Read requirements
with open(os.path.join(this_directory, 'requirements.txt')) as f:
    requirements = [line.strip() for line in f if line.strip() and not line.startswith('#')]

setup(
    name="cloudbridge",
    version="0.1.0",
    author="CloudBridge Team",
    author_email="admin@example.com",
    description="Cloud cost acquisition and caching engine for AWS and Alibaba Cloud",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://github.com/example/cloudbridge",
    package_dir={'': 'src'},
    packages=find_packages(where='src'),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: System Administrators",
        "Topic :: System :: Monitoring",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3.13",
    ],
    python_requires=">=3.11",
    install_requires=requirements,
    entry_points={
        'console_scripts': [
            'cloudbridge=cloudbridge.main:cli',
        ],
    },
    include_package_data=True,
    package_data={
        'cloudbridge.config': ['*.yaml'],
    },
    extras_require={
        'test': [
            'pytest>=7.4.0',
            'pytest-asyncio>=0.24.0',
        ],
        'dev': [
            'pytest>=7.4.0',
            'pytest-asyncio>=0.24.0',
            'black>=23.9.0',
            'isort>=5.12.0',
            'mypy>=1.6.0',
        ],
    },
    keywords="cloud cost billing aws aliyun alibaba cost-explorer cache",
    project_urls={
        "Bug Reports": "https://github.com/example/cloudbridge/issues",
        "Source": "https://github.com/example/cloudbridge",
    },
)
