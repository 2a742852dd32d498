from downdetector.main import main

raise SystemExit(main())
