# SPDX-FileCopyrightText: 2025 ngstream contributors
# SPDX-License-Identifier: Apache-2.0

from .ngspice_common import *
from .registry import *
from .ngspice_ffi import *
from .catalog import *
from .ringbuffer import *
from .export import *
from .events import *
from .session import *
from .batch import *
