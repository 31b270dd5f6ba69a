"""Allow ``python -m agentkb.cli`` execution."""

from agentkb.cli.kb import main

main()
