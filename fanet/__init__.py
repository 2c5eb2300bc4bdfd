# Copyright 2024 FANET Mesh Contributors
# SPDX-License-Identifier: Apache-2.0
"""
FANET mesh protocol package.

Flying ad-hoc network protocol engine for UAVs and a ground control
station (GCS), plus the in-memory collaborators used to simulate it.
"""

__version__ = "0.1.0"
