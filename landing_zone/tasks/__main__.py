# Unless explicitly stated otherwise all files in this repository are licensed under the Apache-2 License.

# This product includes software developed at Datadog (https://www.datadoghq.com/) Copyright 2025 Datadog, Inc.

# project
from tasks.provisioning_task import PROVISIONING_TASK_NAME

TASKS = [
    PROVISIONING_TASK_NAME,
]

if __name__ == "__main__":  # pragma: no cover
    print(" ".join(TASKS))
