"""
Binary-to-text codec for the server
Base64 encoding/decoding of raw file contents
"""

BASE64_CHARS = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/"
BASE64_PAD_CHAR = "="

# Symbols outside the alphabet decode as zero
BASE64_REVERSE_MAP = {char: index for index, char in enumerate(BASE64_CHARS)}


class CodecHandler:
    """Handles base64 conversion of file payloads"""

    def b64_encode(self, data: bytes) -> str:
        """Encode raw bytes as a padded base64 string"""
        output = []
        full_groups_end = len(data) - len(data) % 3

        # Every 3 input bytes form a 24-bit window sliced into four 6-bit indices
        for i in range(0, full_groups_end, 3):
            window = (data[i] << 16) | (data[i + 1] << 8) | data[i + 2]
            output.append(BASE64_CHARS[(window >> 18) & 0x3F])
            output.append(BASE64_CHARS[(window >> 12) & 0x3F])
            output.append(BASE64_CHARS[(window >> 6) & 0x3F])
            output.append(BASE64_CHARS[window & 0x3F])

        remainder = len(data) - full_groups_end
        if remainder == 1:
            window = data[full_groups_end] << 16
            output.append(BASE64_CHARS[(window >> 18) & 0x3F])
            output.append(BASE64_CHARS[(window >> 12) & 0x3F])
            output.append(BASE64_PAD_CHAR * 2)
        elif remainder == 2:
            window = (data[full_groups_end] << 16) | (data[full_groups_end + 1] << 8)
            output.append(BASE64_CHARS[(window >> 18) & 0x3F])
            output.append(BASE64_CHARS[(window >> 12) & 0x3F])
            output.append(BASE64_CHARS[(window >> 6) & 0x3F])
            output.append(BASE64_PAD_CHAR)

        return "".join(output)

    def b64_decode(self, text: str) -> bytes:
        """
        Decode a base64 string back into raw bytes.

        Decoding stops at the first pad character. Malformed input is decoded
        on a best-effort basis and never raises.

        Args:
            text: The base64 text to decode.

        Returns:
            The decoded bytes.
        """
        result = bytearray()
        group = []

        for char in text:
            if char == BASE64_PAD_CHAR:
                break
            group.append(BASE64_REVERSE_MAP.get(char, 0))
            if len(group) == 4:
                result.extend(self._four_to_three(group))
                group = []

        # A trailing group of k symbols carries k - 1 whole bytes
        if group:
            leftover = len(group)
            group.extend([0] * (4 - leftover))
            result.extend(self._four_to_three(group)[:leftover - 1])

        return bytes(result)

    def _four_to_three(self, indices) -> bytes:
        """Repack four 6-bit indices into three bytes"""
        window = (indices[0] << 18) | (indices[1] << 12) | (indices[2] << 6) | indices[3]
        return bytes(((window >> 16) & 0xFF, (window >> 8) & 0xFF, window & 0xFF))
