from permissions_exporter.main import main

raise SystemExit(main())
