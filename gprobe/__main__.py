from gprobe.cli import main

main()
