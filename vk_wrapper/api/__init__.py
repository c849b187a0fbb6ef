# vk_wrapper/api/__init__.py
"""
Auto-import submodules so that
    from vk_wrapper.api import server, settings
works even when they haven't been imported elsewhere.
"""

from importlib import import_module as _import

for _name in ("server", "settings"):
    _import(f"{__name__}.{_name}")

del _import, _name
