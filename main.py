#!/usr/bin/env python3
"""
Compress-It - Main Entry Point
Compress images to a quality level and videos to a target file size

Usage examples:
    python main.py image photo.jpg -q 75
    python main.py video clip.mov -s 16 --quality high
"""

import sys

# Force UTF-8 console output so status glyphs print on Windows terminals
if hasattr(sys.stdout, 'reconfigure'):
    sys.stdout.reconfigure(encoding='utf-8')
if hasattr(sys.stderr, 'reconfigure'):
    sys.stderr.reconfigure(encoding='utf-8')

from compressit.cli import main

if __name__ == '__main__':
    main()
