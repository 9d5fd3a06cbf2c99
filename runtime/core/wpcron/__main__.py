from wpcron.main import main

raise SystemExit(main())
