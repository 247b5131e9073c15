from __future__ import annotations

import json
import sys

from idleguard.core.config import get_config


def main() -> None:
    root = sys.argv[1] if len(sys.argv) > 1 else "."
    cfg = get_config(root=root, read_only=True).get()
    print(json.dumps(cfg.model_dump(), indent=2, sort_keys=True))


if __name__ == "__main__":
    main()
