# shellsense/agent/__init__.py
