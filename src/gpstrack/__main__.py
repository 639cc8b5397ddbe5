from gpstrack.cli import main

raise SystemExit(main())
