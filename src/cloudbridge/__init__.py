"""
CloudBridge

Multi-provider cloud cost acquisition and caching engine for AWS and
Alibaba Cloud accounts.
"""

__version__ = "0.1.0"
__author__ = "CloudBridge Team"
