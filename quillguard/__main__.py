from .server import cli_main

cli_main()
