"""
Configuration settings for the NPR story sync CLI
"""

import os
from pathlib import Path

# Where settings, secrets, the content database and downloaded files live
CONFIG_DIR = Path(os.getenv("NPR_STORY_HOME", str(Path.home() / ".npr_story")))
SETTINGS_FILE = CONFIG_DIR / "settings.json"
DB_PATH = CONFIG_DIR / "content.db"
FILES_DIR = CONFIG_DIR / "files"

# Pull/push service choices
SERVICES = ["cds", "xml"]

# Queue settings
QUEUE_BATCH_SIZE = 50
QUEUE_INTERVAL = 3600  # seconds

# Logging settings
LOG_LEVEL = "INFO"
LOG_FILE = "npr_story.log"
LOG_DIR = CONFIG_DIR / "logs"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_ROTATION_SIZE = 10 * 1024 * 1024  # 10MB
LOG_BACKUP_COUNT = 5
