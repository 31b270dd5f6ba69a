"""Command-line tools for operating an agentkb deployment.

- ``python -m agentkb serve`` runs the HTTP API (and, by default, the
  stage workers in the same process).
- ``python -m agentkb worker`` runs only the stage workers.
- ``python -m agentkb ingest`` uploads local files and optionally drains
  the queues in-process.
- ``python -m agentkb status`` prints agent, file, deletion or queue
  status, or the effective configuration.
- ``python -m agentkb delete`` queues file deletions.
- ``python -m agentkb purge`` removes expired deletion jobs and tombstones.

All commands use argparse and build the same object graph as the web app
through :func:`agentkb.main.build_components`.
"""
