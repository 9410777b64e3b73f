"""
podradio package __main__ entry point.

Allows running with: python -m podradio
"""

from podradio.app.radio import main

if __name__ == "__main__":
    main()
