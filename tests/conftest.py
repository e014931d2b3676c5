import sys
from pathlib import Path

# `app` and `agents` are imported from the repository root, not from an installed package
ROOT_DIR = str(Path(__file__).resolve().parent.parent)
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)
