# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2026 The Startpage Authors

"""
Startpage - Update Service

Administrative service that keeps a start-page deployment current: it
checks GitHub for newer releases, classifies what an update touches, pulls
it, installs dependencies and respawns the running service.
"""

__version__ = "1.4.0"
__author__ = "The Startpage Authors"
