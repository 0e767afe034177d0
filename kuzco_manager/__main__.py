from kuzco_manager.cli import main

if __name__ == "__main__":
    main()
