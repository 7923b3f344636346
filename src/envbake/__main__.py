from envbake.cli import main

raise SystemExit(main())
