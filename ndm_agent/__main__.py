from ndm_agent.agent import main

main()
