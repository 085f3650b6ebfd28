#!/usr/bin/env python3
"""
Launcher script for the Vultr orchestrator.
This script runs the orchestrator from the project root.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from scripts.vultr.orchestrator import main

if __name__ == "__main__":
    sys.exit(main())
