from soltip.cli import main

main()
