"""procctl 入口点。

支持: python -m procctl -- <command> [args...]
"""

from .cli import main

if __name__ == "__main__":
    main()
