from librarysync.runtime.worker_entrypoint import main

raise SystemExit(main())
