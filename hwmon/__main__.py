from hwmon.server import main

main()
