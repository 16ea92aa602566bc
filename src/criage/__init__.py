# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
criage - package manager and repository server

Self-describing compressed package archives, an installed-package registry
with lifecycle hooks, and a searchable HTTP repository.
"""

__version__ = "1.0.0"
