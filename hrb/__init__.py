"""host-restic-backup - restic backups of host files and docker volumes.

Package layout:
- common.py: Settings loading, restic environment, logging setup, binary checks
- lock.py: Single-instance advisory lock
- utils.py: Config list reading
- volumes.py: Docker volume archive/restore via throwaway containers
- commands/: Command handlers dispatched from main.py
"""

__version__ = "1.0.0"
