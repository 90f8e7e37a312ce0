from .uploader import main

main()
