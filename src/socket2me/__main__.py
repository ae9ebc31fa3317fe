from socket2me.cli import main

main()
