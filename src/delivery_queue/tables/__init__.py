# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Table managers of the delivery queue database."""

from .delivery_log import DeliveryLogTable
from .entries import QueueEntriesTable
from .instance_config import InstanceConfigTable
from .lease import ProcessingLeaseTable
from .templates import TemplatesTable

__all__ = [
    "DeliveryLogTable",
    "InstanceConfigTable",
    "ProcessingLeaseTable",
    "QueueEntriesTable",
    "TemplatesTable",
]
