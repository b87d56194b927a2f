# shellsense/core/__init__.py
