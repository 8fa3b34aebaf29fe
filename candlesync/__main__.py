from candlesync.cli import main

raise SystemExit(main())
