# shellsense/ui/__init__.py
