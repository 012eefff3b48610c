from bitvavo_client.main import main

main()
