"""Sage - behavioral decision engine

Decides *when* to step in (signals and interventions) and *what* to say
(a contextual bandit over a closed set of coaching actions), then learns
from how the user reacted.

Packages:
    behavior/:   feature snapshots, signal rules, intervention arbitration
    learning/:   policy engine, reward shaping, experience lifecycle
    compliance/: consent gating for anything that learns
"""

from pathlib import Path

__version__ = "0.1.0"

# Path constants
PROJECT_ROOT = Path(__file__).parent.parent
DATA_DIR = PROJECT_ROOT / "data"
ARGS_DIR = PROJECT_ROOT / "args"
