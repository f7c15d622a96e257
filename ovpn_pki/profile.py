"""OpenVPN server configuration and inline client profiles."""

from .models import ServerEndpoint, utcnow

CIPHER = "AES-256-GCM"
AUTH = "SHA256"
SERVER_NETWORK = "192.168.255.0"
SERVER_NETMASK = "255.255.255.0"
CONFIG_ROOT = "/etc/openvpn"


def _pem(data) -> str:
    if isinstance(data, bytes):
        data = data.decode("ascii")
    return data.strip()


def render_server_config(endpoint: ServerEndpoint) -> str:
    """Generate the OpenVPN server configuration for one instance"""
    pki = f"{CONFIG_ROOT}/pki"
    return f"""# OpenVPN Server Configuration
# Generated: {utcnow().isoformat()}

# Network Configuration
port {endpoint.port}
proto {endpoint.proto}
dev tun0
server {SERVER_NETWORK} {SERVER_NETMASK}
ifconfig-pool-persist {CONFIG_ROOT}/ipp.txt

# Certificate Files
ca {pki}/ca.crt
cert {pki}/issued/{endpoint.host}.crt
key {pki}/private/{endpoint.host}.key
dh none
tls-crypt {pki}/ta.key
crl-verify {pki}/crl.pem

# Encryption Settings
data-ciphers {CIPHER}:AES-128-GCM
auth {AUTH}
tls-version-min 1.2

# Network Settings
push "redirect-gateway def1 bypass-dhcp"
push "dhcp-option DNS 8.8.8.8"
push "dhcp-option DNS 8.8.4.4"
push "block-outside-dns"

# Security
keepalive 10 60
user nobody
group nogroup
persist-key
persist-tun
remote-cert-tls client

# Logging
status /tmp/openvpn-status.log
verb 3
"""


def render_client_profile(name: str, endpoint: ServerEndpoint, ca_pem, cert_pem, key_pem, ta_key) -> str:
    """Client configuration with CA, certificate, key and tls-crypt key inlined"""
    return f"""# OpenVPN client profile for {name}
client
dev tun
proto {endpoint.proto}
remote {endpoint.host} {endpoint.port}
resolv-retry infinite
nobind
persist-key
persist-tun
remote-cert-tls server
cipher {CIPHER}
auth {AUTH}
verb 3
redirect-gateway def1

<ca>
{_pem(ca_pem)}
</ca>

<cert>
{_pem(cert_pem)}
</cert>

<key>
{_pem(key_pem)}
</key>

<tls-crypt>
{_pem(ta_key)}
</tls-crypt>
"""
