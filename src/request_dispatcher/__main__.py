from request_dispatcher.pipeline.runner import main

if __name__ == "__main__":
    exit(main())
