# SPDX-FileCopyrightText: 2025 ngstream contributors
# SPDX-License-Identifier: Apache-2.0

from .rational import *
from .deck import *
from .sim import *
