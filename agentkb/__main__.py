"""Allow ``python -m agentkb`` execution."""

from agentkb.cli.kb import main

main()
