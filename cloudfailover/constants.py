"""Names and limits shared across the failover packages."""

from __future__ import annotations

from enum import Enum


class CloudEnvironment(str, Enum):
    AWS = "aws"
    AZURE = "azure"
    GCP = "gcp"


class DeviceStatus(str, Enum):
    ACTIVE = "active"
    STANDBY = "standby"


# Feature flag sections of the declaration
IP_FAILOVER = "failoverAddresses"
ROUTE_FAILOVER = "failoverRoutes"

# Durable checkpoint location
STORAGE_FOLDER_NAME = "cloudfailover"
STATE_FILE_NAME = "cloudfailoverstate.json"

# Tag keys read from cloud resources
NIC_TAG = "f5_cloud_failover_nic_map"
ROUTE_NEXT_HOP_ADDRESS_TAG = "f5_self_ips"
AWS_VIPS_TAGS = ("VIPS", "f5_cloud_failover_vips")

# Next-hop discovery types
NEXT_HOP_ROUTE_TAG = "routeTag"
NEXT_HOP_STATIC = "static"

# Cloud API retry policy
MAX_RETRIES = 20
RETRY_INTERVAL_S = 10.0

# Task wait: poll every 3s up to 400 times (~20 min), above the 10 min run ceiling
TASK_WAIT_MAX_ATTEMPTS = 400
TASK_WAIT_INTERVAL_S = 3.0
RUNNING_TASK_MAX_S = 10 * 60

STATE_FILE_RESET_MESSAGE = "Failover state file was reset"
NEVER_RUN_MESSAGE = "Failover has never been triggered"
NO_ACTION_MESSAGE = "No action performed"
