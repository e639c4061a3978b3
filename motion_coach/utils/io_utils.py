"""
I/O utilities for session configuration, reports and random seeds.
"""

import json
import os
import random
import numpy as np
import yaml
import logging
from datetime import datetime
from typing import Dict, Iterable

from pydantic import BaseModel

logger = logging.getLogger(__name__)


def set_global_seed(seed: int = 42) -> None:
    """
    Set random seeds for reproducibility across all libraries.

    Args:
        seed (int): Random seed value
    """
    random.seed(seed)
    np.random.seed(seed)
    os.environ['PYTHONHASHSEED'] = str(seed)
    logger.info("Global random seed set to: %d", seed)


def load_config(config_path: str) -> Dict:
    """
    Loads session configuration from a YAML file.

    Args:
        config_path (str): Path to the YAML configuration file.

    Returns:
        Dict: The loaded configuration.
    """
    with open(config_path, 'r') as f:
        config = yaml.safe_load(f)
    return config


def save_session_report(records: Iterable[BaseModel], reports_dir: str = 'reports') -> str:
    """
    Write emitted session summaries (or any models) to a timestamped JSON file.

    Args:
        records: Pydantic models to serialize, in emission order
        reports_dir (str): Directory for report files

    Returns:
        str: Path of the written report
    """
    os.makedirs(reports_dir, exist_ok=True)
    stamp = datetime.now().strftime('%Y%m%d_%H%M%S')
    path = os.path.join(reports_dir, f'session_{stamp}.json')
    with open(path, 'w') as f:
        json.dump([r.model_dump(mode='json') for r in records], f, indent=2)
    logger.info("Session report saved: %s", path)
    return path
