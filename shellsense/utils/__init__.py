# shellsense/utils/__init__.py
