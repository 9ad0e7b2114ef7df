from liveness_monitor.main import main

raise SystemExit(main())
