from prfleet.cli import main

main()
