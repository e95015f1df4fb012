# SPDX-FileCopyrightText: 2025 ngstream contributors
# SPDX-License-Identifier: Apache-2.0

from .textutil import *
from .paths import *
from .normalizer import *
