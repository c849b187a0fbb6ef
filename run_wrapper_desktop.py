"""
Standalone entry point that *always* launches a native window.
Run via:  python run_wrapper_desktop.py
"""

from vk_wrapper.main import run_desktop

run_desktop()
