from __future__ import annotations

from remotebox import main as main_module

if __name__ == "__main__":
    main_module.main()
